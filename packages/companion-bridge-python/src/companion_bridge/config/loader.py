"""
配置加载器（YAML）。

参考：
- 默认配置：`packages/companion-bridge-python/src/companion_bridge/assets/default.yaml`

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 两个通道名是进程级单例资源：由配置注入，而不是写死在代码里。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
import re
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_CHANNEL_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
_IMAGE_SIZE_RE = re.compile(r"^[1-9][0-9]*x[1-9][0-9]*$")


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class BridgeChannelConfig(BaseModel):
    """
    通道配置（两个固定名字 + 超时/容量）。

    说明：
    - `worker_inbound`：host -> worker 方向；`host_inbound`：worker -> host 方向。
    - `accept_timeout_ms` / `response_timeout_ms` 为 None 时无限等待（原始协议没有超时）。
    - `backlog` 即“最大排队实例数”；超过后的连接由 OS 拒绝。
    """

    model_config = ConfigDict(extra="forbid")

    dir: Optional[str] = None
    worker_inbound: str = "companion_worker_pipe"
    host_inbound: str = "companion_host_pipe"
    connect_timeout_ms: int = Field(default=2000, ge=0)
    connect_retry_interval_ms: int = Field(default=20, ge=1)
    accept_timeout_ms: Optional[int] = Field(default=None, ge=1)
    response_timeout_ms: Optional[int] = Field(default=None, ge=1)
    max_frame_bytes: int = Field(default=1024 * 1024, ge=64)
    backlog: int = Field(default=1, ge=1, le=128)

    @field_validator("worker_inbound", "host_inbound")
    @classmethod
    def _validate_channel_name(cls, value: str) -> str:
        """通道名会落到文件名上：只允许字母数字与 `_.-`。"""

        if not _CHANNEL_NAME_RE.match(value or ""):
            raise ValueError(f"invalid channel name: {value!r}")
        return value

    @model_validator(mode="after")
    def _distinct_names(self) -> "BridgeChannelConfig":
        """两个方向不得共用同一个名字（否则 host 与 worker 会互相抢 lease）。"""

        if self.worker_inbound == self.host_inbound:
            raise ValueError("channel.worker_inbound and channel.host_inbound must differ")
        return self


class BridgeWorkerConfig(BaseModel):
    """
    Worker 进程配置。

    说明：
    - `process_name` 同时是名字查找的依据与 sentinel 的保留前缀。
    - `executable` 为 None 时用当前解释器 `-m companion_bridge.worker` 启动；
      否则视为可执行文件路径（相对路径相对 `apps_dir`）。
    """

    model_config = ConfigDict(extra="forbid")

    process_name: str = "companion_worker"
    executable: Optional[str] = None
    apps_dir: Optional[str] = None
    announce_ready: bool = True
    ready_timeout_ms: int = Field(default=5000, ge=1)
    busy_retry_ms: int = Field(default=200, ge=1)

    @field_validator("process_name")
    @classmethod
    def _validate_process_name(cls, value: str) -> str:
        """进程名不能为空白，也不能含换行（会进入 frame）。"""

        s = str(value or "").strip()
        if not s or "\n" in s or "\r" in s:
            raise ValueError("worker.process_name must be a non-empty single line")
        return s


class BridgeWatchdogConfig(BaseModel):
    """Session watchdog 配置（None 表示不启用）。"""

    model_config = ConfigDict(extra="forbid")

    session_process_name: Optional[str] = None
    interval_ms: int = Field(default=2000, ge=10)


class BridgeProviderConfig(BaseModel):
    """托管媒体 API 连接配置（最小集合）。"""

    model_config = ConfigDict(extra="forbid")

    base_url: str = "https://api.openai.com/v1"
    timeout_sec: int = Field(default=120, ge=1)
    transcription_model: str = "whisper-1"
    max_image_count: int = Field(default=10, ge=1)
    default_image_size: str = "1024x1024"
    image_sizes: List[str] = Field(default_factory=lambda: ["256x256", "512x512", "1024x1024"])

    @field_validator("image_sizes")
    @classmethod
    def _validate_sizes(cls, value: List[str]) -> List[str]:
        """尺寸必须形如 `WxH`。"""

        for size in value:
            if not _IMAGE_SIZE_RE.match(size):
                raise ValueError(f"invalid image size: {size!r}")
        return value

    @model_validator(mode="after")
    def _default_size_allowed(self) -> "BridgeProviderConfig":
        """默认尺寸必须在允许列表里。"""

        if self.default_image_size not in self.image_sizes:
            raise ValueError("provider.default_image_size must be one of provider.image_sizes")
        return self


class BridgeHostConfig(BaseModel):
    """Host 侧配置（凭据来源 + 音频文件等待）。"""

    model_config = ConfigDict(extra="forbid")

    api_key_env: str = "OPENAI_API_KEY"
    org_env: Optional[str] = "OPENAI_ORG_ID"
    default_audio_path: Optional[str] = None
    audio_wait_timeout_ms: int = Field(default=5000, ge=0)
    audio_wait_interval_ms: int = Field(default=100, ge=1)


class BridgeLoggingConfig(BaseModel):
    """日志配置（rotating error log）。"""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    error_log_path: Optional[str] = None
    max_bytes: int = Field(default=100 * 1024 * 1024, ge=1024)
    backup_count: int = Field(default=5, ge=0)


class BridgeConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    channel: BridgeChannelConfig = Field(default_factory=BridgeChannelConfig)
    worker: BridgeWorkerConfig = Field(default_factory=BridgeWorkerConfig)
    watchdog: BridgeWatchdogConfig = Field(default_factory=BridgeWatchdogConfig)
    provider: BridgeProviderConfig = Field(default_factory=BridgeProviderConfig)
    host: BridgeHostConfig = Field(default_factory=BridgeHostConfig)
    logging: BridgeLoggingConfig = Field(default_factory=BridgeLoggingConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> BridgeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `BridgeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return BridgeConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> BridgeConfig:
    """
    加载并合并多个配置文件，返回校验后的 `BridgeConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
