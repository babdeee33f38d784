"""
Verb 派发（静态查表）。

语义：
- 派发表在构造时固定；每个入站 frame 查表一次。
- 未知 verb：不执行任何 handler、不抛异常、不产生回复（有意保留的宽松行为）。
  结果以 `ProtocolAnomaly(kind=UNKNOWN_VERB)` 暴露给调用方/测试。
- handler 自己负责元素个数校验；返回 None 表示拒绝（DECLINED，同样不回复）。
- handler 抛出的任何异常都在这里被捕获并转换为 sentinel frame。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from companion_bridge.protocol.frame import (
    DECLINED,
    DROPPED,
    UNKNOWN_VERB,
    Frame,
    ProtocolAnomaly,
)
from companion_bridge.protocol.sentinel import make_sentinel

logger = logging.getLogger(__name__)

Handler = Callable[[Frame], Optional[Frame]]

OUTCOME_OK = "ok"
OUTCOME_FAILED = "failed"
OUTCOME_DROPPED = "dropped"


@dataclass(frozen=True)
class DispatchOutcome:
    """
    一次派发的结果（tagged result）。

    字段：
    - status：ok|failed|dropped
    - frame：ok 时为 handler 输出；failed 时为 sentinel；dropped 时为 None
    - anomaly：dropped 时说明原因
    - error：failed 时的原始异常（仅进程内可见，不上 wire）
    """

    status: str
    frame: Optional[Frame] = None
    anomaly: Optional[ProtocolAnomaly] = None
    error: Optional[BaseException] = None

    @property
    def reply(self) -> Optional[Frame]:
        """需要写回对端的 frame（dropped 时为 None）。"""

        if self.status == OUTCOME_DROPPED:
            return None
        return self.frame


class FrameDispatcher:
    """静态 verb -> handler 派发器。"""

    def __init__(self, table: Mapping[str, Handler]) -> None:
        """
        参数：
        - table：verb -> handler；构造后只读
        """

        self._table: Mapping[str, Handler] = MappingProxyType(dict(table))

    @property
    def verbs(self) -> list[str]:
        """已注册的 verb（排序）。"""

        return sorted(self._table)

    def dispatch(self, frame: Frame) -> DispatchOutcome:
        """
        派发一个 frame。

        返回：
        - DispatchOutcome（见类说明）；本方法从不抛异常
        """

        if not frame:
            return DispatchOutcome(
                status=OUTCOME_DROPPED,
                anomaly=ProtocolAnomaly(kind=DROPPED, reason="empty frame"),
            )

        verb = frame[0]
        handler = self._table.get(verb)
        if handler is None:
            logger.info("unknown verb ignored: %s", verb)
            return DispatchOutcome(
                status=OUTCOME_DROPPED,
                anomaly=ProtocolAnomaly(kind=UNKNOWN_VERB, reason=f"unknown verb: {verb}"),
            )

        try:
            out = handler(frame)
        except Exception as exc:
            logger.error("handler failed: verb=%s error=%s", verb, exc)
            return DispatchOutcome(status=OUTCOME_FAILED, frame=make_sentinel(str(exc)), error=exc)

        if out is None:
            logger.info("handler declined: verb=%s elements=%d", verb, len(frame))
            return DispatchOutcome(
                status=OUTCOME_DROPPED,
                anomaly=ProtocolAnomaly(kind=DECLINED, reason=f"{verb} declined {len(frame)} elements"),
            )
        return DispatchOutcome(status=OUTCOME_OK, frame=list(out))
