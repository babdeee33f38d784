"""
Verb 派发（worker 侧执行操作；host 侧解释回复）。
"""

from __future__ import annotations

from companion_bridge.dispatch.dispatcher import DispatchOutcome, FrameDispatcher, Handler

__all__ = ["DispatchOutcome", "FrameDispatcher", "Handler"]
