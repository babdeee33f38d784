"""
frame 内嵌凭据解析（`key[:organization]`）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from companion_bridge.core.errors import OperationError


@dataclass(frozen=True)
class Credential:
    """API 凭据（key + 可选 organization）。"""

    api_key: str
    organization: Optional[str] = None

    def __repr__(self) -> str:
        """避免把 key 打进日志。"""

        return f"Credential(api_key='***', organization={self.organization!r})"


def parse_credential(raw: str) -> Credential:
    """
    解析 frame[1] 中的凭据。

    规则：
    - 在第一个 `:` 处切分：左边是 key，右边（非空时）是 organization
    - key 为空时抛 OperationError
    """

    key, sep, org = str(raw or "").partition(":")
    key = key.strip()
    if not key:
        raise OperationError("API key is null or empty!")
    org = org.strip() if sep else ""
    return Credential(api_key=key, organization=org or None)


def format_credential(api_key: str, organization: Optional[str] = None) -> str:
    """按 wire 约定拼接凭据（host 侧使用）。"""

    if organization:
        return f"{api_key}:{organization}"
    return api_key
