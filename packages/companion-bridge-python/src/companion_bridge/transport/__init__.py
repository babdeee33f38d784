"""
通道传输层（单次使用的 listener / channel + 单实例 lease）。
"""

from __future__ import annotations

from companion_bridge.transport.channel import InboundListener, OutboundChannel
from companion_bridge.transport.lease import ChannelLease
from companion_bridge.transport.paths import ChannelPaths, get_channel_paths

__all__ = ["ChannelLease", "ChannelPaths", "InboundListener", "OutboundChannel", "get_channel_paths"]
