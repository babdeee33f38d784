"""
Session watchdog（worker 内的 dead-man's switch）。

说明：
- 独立于请求/响应循环，按固定间隔检查“拥有整个 session 的交互式应用”是否仍有进程存活。
- 被检查的是第三个进程（不是发请求的 host）；host 非正常退出时，worker 仍会随 session 结束。
- 探测失败即停止并调用 on_orphaned（默认立即退出进程）。
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from companion_bridge.core.processes import is_process_running

logger = logging.getLogger(__name__)


def _exit_now() -> None:
    """立即结束当前进程（不走 atexit / finally，与“被 kill”等价）。"""

    os._exit(0)


class SessionWatchdog:
    """周期性检查 session 进程是否存活。"""

    def __init__(
        self,
        session_process_name: str,
        *,
        interval_ms: int = 2000,
        probe: Optional[Callable[[str], bool]] = None,
        on_orphaned: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        参数：
        - session_process_name：session 应用的进程名
        - interval_ms：检查间隔（默认 2000ms）
        - probe：名字 -> 是否存活（默认 psutil 名字查找）
        - on_orphaned：探测失败时的回调（默认 `os._exit(0)`）
        """

        self._name = session_process_name
        self._interval = max(0.01, int(interval_ms) / 1000.0)
        self._probe = probe or is_process_running
        self._on_orphaned = on_orphaned or _exit_now
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        """后台线程是否在运行。"""

        return self._thread is not None and self._thread.is_alive()

    def check_once(self) -> bool:
        """
        执行一次探测。

        返回：
        - True：session 仍存活
        - False：session 已不存在（已触发 on_orphaned）

        说明：
        - 探测本身抛异常时视为存活（只记日志），避免误杀。
        """

        try:
            alive = bool(self._probe(self._name))
        except Exception as exc:
            logger.warning("session probe failed: name=%s err=%s", self._name, exc)
            return True
        if alive:
            return True
        logger.warning("session process %s is gone; worker exits", self._name)
        self._stop.set()
        self._on_orphaned()
        return False

    def _run(self) -> None:
        """线程入口：每个间隔探测一次，直到 stop 或探测失败。"""

        while not self._stop.wait(self._interval):
            if not self.check_once():
                return

    def start(self) -> None:
        """启动后台线程（幂等）。"""

        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="session-watchdog", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """停止后台线程（不等待超过一个间隔）。"""

        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=self._interval + 1.0)
