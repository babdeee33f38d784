"""
Wire 协议（frame 编解码 + sentinel 约定）。
"""

from __future__ import annotations

from companion_bridge.protocol.frame import (
    DecodeResult,
    Frame,
    ProtocolAnomaly,
    decode_frame,
    encode_frame,
    inspect_frame,
)
from companion_bridge.protocol.sentinel import is_failure, make_sentinel

__all__ = [
    "DecodeResult",
    "Frame",
    "ProtocolAnomaly",
    "decode_frame",
    "encode_frame",
    "inspect_frame",
    "is_failure",
    "make_sentinel",
]
