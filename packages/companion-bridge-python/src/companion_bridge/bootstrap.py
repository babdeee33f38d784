"""
Bootstrap Layer（配置发现 + 日志初始化）。

设计目标：
- 核心模块无隐式 I/O：WorkerServer / BridgeClient 只接收已校验的 `BridgeConfig`
- host/worker/CLI 入口共用同一套“默认 YAML + overlays + env”发现规则
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from companion_bridge.config.defaults import load_default_config_dict
from companion_bridge.config.loader import BridgeConfig, _load_yaml_file, load_config_dicts

CONFIG_PATHS_ENV = "COMPANION_BRIDGE_CONFIG"

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """
    读取 env 并返回非空白字符串（否则视为未设置）。

    参数：
    - key：环境变量名
    """

    v = (os.environ if env is None else env).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白、保序）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def discover_overlay_paths(
    overlay_paths: Optional[Sequence[Path]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> list[Path]:
    """
    overlay 路径发现规则（固定，顺序稳定）：
    1) `COMPANION_BRIDGE_CONFIG`（逗号/分号分隔）
    2) 显式传入的 overlay_paths（CLI `--config`）

    返回：
    - 去重后的绝对路径列表（保序）
    """

    overlays: list[Path] = []
    raw = _get_env_nonempty(CONFIG_PATHS_ENV, env=env) or ""
    for p in _split_paths(raw):
        overlays.append(Path(p).expanduser().resolve())
    for p in overlay_paths or []:
        overlays.append(Path(p).expanduser().resolve())

    seen: set[Path] = set()
    uniq: list[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def resolve_config(
    overlay_paths: Optional[Sequence[Path]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> BridgeConfig:
    """
    合并“内置默认 + overlays + overrides”，返回校验后的配置。

    参数：
    - overlay_paths：额外 YAML overlay（后者覆盖前者）
    - env：用于发现 `COMPANION_BRIDGE_CONFIG` 的环境映射（默认 os.environ）
    - overrides：最后一层内存覆盖（CLI 参数）
    """

    layers: list[Dict[str, Any]] = [load_default_config_dict()]
    for path in discover_overlay_paths(overlay_paths, env=env):
        layers.append(_load_yaml_file(path))
    if overrides:
        layers.append(overrides)
    return load_config_dicts(layers)


def configure_logging(config: BridgeConfig) -> None:
    """
    初始化进程级日志（stderr）。

    说明：
    - 只在入口调用（worker main / CLI）；库代码只使用 `logging.getLogger(__name__)`。
    - rotating error log 由 `observability.error_log.configure_error_log` 单独挂载。
    """

    logging.basicConfig(level=getattr(logging, config.logging.level, logging.INFO), format=_LOG_FORMAT)
