from __future__ import annotations

import threading
from typing import List

from companion_bridge.worker.watchdog import SessionWatchdog


def test_check_once_keeps_running_while_session_is_alive() -> None:
    orphaned: List[bool] = []
    wd = SessionWatchdog("HostApp", probe=lambda name: name == "HostApp", on_orphaned=lambda: orphaned.append(True))
    assert wd.check_once() is True
    assert orphaned == []


def test_check_once_fires_when_session_is_gone() -> None:
    orphaned: List[bool] = []
    wd = SessionWatchdog("HostApp", probe=lambda name: False, on_orphaned=lambda: orphaned.append(True))
    assert wd.check_once() is False
    assert orphaned == [True]


def test_probe_errors_do_not_kill_the_worker() -> None:
    def _broken(name: str) -> bool:
        """探测本身失败。"""

        raise RuntimeError("process table unavailable")

    orphaned: List[bool] = []
    wd = SessionWatchdog("HostApp", probe=_broken, on_orphaned=lambda: orphaned.append(True))
    assert wd.check_once() is True
    assert orphaned == []


def test_background_thread_exits_after_session_disappears() -> None:
    """
    session 存活两次后消失：回调恰好触发一次，线程随之退出。
    """

    answers = [True, True]
    fired = threading.Event()
    calls: List[str] = []

    def _probe(name: str) -> bool:
        """前两次存活，之后消失。"""

        calls.append(name)
        return answers.pop(0) if answers else False

    wd = SessionWatchdog("HostApp", interval_ms=10, probe=_probe, on_orphaned=fired.set)
    wd.start()
    assert fired.wait(timeout=3.0)
    wd.stop()

    assert not wd.running
    assert len(calls) == 3


def test_stop_before_session_disappears() -> None:
    fired = threading.Event()
    wd = SessionWatchdog("HostApp", interval_ms=10, probe=lambda name: True, on_orphaned=fired.set)
    wd.start()
    assert wd.running
    wd.stop()
    assert not wd.running
    assert not fired.is_set()
