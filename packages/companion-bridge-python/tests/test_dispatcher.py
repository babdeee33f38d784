from __future__ import annotations

from typing import Dict, List, Optional

from companion_bridge.core.errors import OperationError
from companion_bridge.dispatch.dispatcher import (
    OUTCOME_DROPPED,
    OUTCOME_FAILED,
    OUTCOME_OK,
    FrameDispatcher,
    Handler,
)
from companion_bridge.protocol.frame import DECLINED, DROPPED, UNKNOWN_VERB


def _echo(frame: List[str]) -> Optional[List[str]]:
    """返回除 verb 外的全部元素。"""

    return frame[1:]


def _boom(frame: List[str]) -> Optional[List[str]]:
    """总是失败。"""

    raise OperationError("file not found")


def _picky(frame: List[str]) -> Optional[List[str]]:
    """只接受恰好 3 个元素。"""

    if len(frame) != 3:
        return None
    return [frame[2]]


def _dispatcher() -> FrameDispatcher:
    """构造测试派发器。"""

    return FrameDispatcher({"echo": _echo, "boom": _boom, "picky": _picky})


def test_known_verb_runs_its_handler() -> None:
    outcome = _dispatcher().dispatch(["echo", "k", "a", "b"])
    assert outcome.status == OUTCOME_OK
    assert outcome.reply == ["k", "a", "b"]
    assert outcome.anomaly is None


def test_unknown_verb_is_ignored_without_reply() -> None:
    outcome = _dispatcher().dispatch(["nope", "k", "x"])
    assert outcome.status == OUTCOME_DROPPED
    assert outcome.reply is None
    assert outcome.anomaly is not None and outcome.anomaly.kind == UNKNOWN_VERB


def test_handler_exception_becomes_error_sentinel() -> None:
    outcome = _dispatcher().dispatch(["boom", "k", "x"])
    assert outcome.status == OUTCOME_FAILED
    assert outcome.reply == ["file not found", "error"]
    assert isinstance(outcome.error, OperationError)


def test_handler_declining_arity_produces_no_reply() -> None:
    outcome = _dispatcher().dispatch(["picky", "k"])
    assert outcome.status == OUTCOME_DROPPED
    assert outcome.reply is None
    assert outcome.anomaly is not None and outcome.anomaly.kind == DECLINED

    assert _dispatcher().dispatch(["picky", "k", "v"]).reply == ["v"]


def test_empty_frame_is_dropped() -> None:
    outcome = _dispatcher().dispatch([])
    assert outcome.status == OUTCOME_DROPPED
    assert outcome.anomaly is not None and outcome.anomaly.kind == DROPPED


def test_table_is_fixed_at_construction() -> None:
    table: Dict[str, Handler] = {"echo": _echo}
    d = FrameDispatcher(table)
    table["late"] = _echo

    assert d.verbs == ["echo"]
    assert d.dispatch(["late", "k", "x"]).status == OUTCOME_DROPPED
