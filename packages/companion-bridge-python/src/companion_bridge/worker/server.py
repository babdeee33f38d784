"""
Worker 主循环（一次性 listener + 静态派发 + 回写）。

状态机：Idle -> Reading -> Dispatching -> WritingResponse -> Idle，永不因失败退出。
- Idle：新建 InboundListener，阻塞 accept。通道被占用时记日志并稍后重试。
- Reading：读一个 frame；读失败视为丢弃的调用，不回复。
- Dispatching：FrameDispatcher；handler 异常已在派发层转换为 sentinel。
- WritingResponse：新建 OutboundChannel 回写。回写失败时最多再尝试一次 sentinel，然后回到 Idle。

readiness 握手：
- 启动时先 bind 自己的 inbound listener，再向 host 发送 `["ready", <process_name>, <pid>]`；
  host 收到后即可确定 worker 已处于 accept 状态（消除冷启动后首个请求丢失的竞态）。
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import signal
import socket
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from companion_bridge.bootstrap import configure_logging, resolve_config
from companion_bridge.config.loader import BridgeConfig
from companion_bridge.core.errors import ChannelBusyError, ChannelError, FrameError, ListenTimeoutError
from companion_bridge.dispatch.dispatcher import DispatchOutcome, FrameDispatcher
from companion_bridge.observability.error_log import configure_error_log
from companion_bridge.protocol.frame import Frame
from companion_bridge.protocol.sentinel import make_sentinel
from companion_bridge.transport.channel import InboundListener, OutboundChannel
from companion_bridge.transport.paths import ChannelPaths, get_channel_paths
from companion_bridge.worker.handlers import build_handler_table
from companion_bridge.worker.watchdog import SessionWatchdog

logger = logging.getLogger(__name__)

READY_VERB = "ready"


class WorkerServer:
    """
    Worker 侧协议循环。

    说明：
    - 单线程；同一时刻只处理一个调用。
    - `stop()` 可从其它线程调用：置位 shutdown 并戳一下自己的 listener，使阻塞的 accept 返回。
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        dispatcher: Optional[FrameDispatcher] = None,
        paths: Optional[ChannelPaths] = None,
        announce_ready: Optional[bool] = None,
    ) -> None:
        """
        创建 worker server。

        参数：
        - config：已校验的配置
        - dispatcher：派发器（默认：媒体 verbs 派发表）
        - paths：通道路径（默认按 config.channel 推导）
        - announce_ready：是否发送 ready 握手（默认 config.worker.announce_ready）
        """

        self._config = config
        self._paths = paths or get_channel_paths(config.channel)
        self._dispatcher = dispatcher or FrameDispatcher(build_handler_table(config.provider))
        self._announce_pending = config.worker.announce_ready if announce_ready is None else bool(announce_ready)
        self._shutdown = threading.Event()

    @property
    def process_name(self) -> str:
        """worker 进程名（也是 sentinel 保留前缀）。"""

        return self._config.worker.process_name

    def _outbound(self) -> OutboundChannel:
        """新建指向 host inbound 的一次性 channel。"""

        return OutboundChannel(self._config.channel.host_inbound, paths=self._paths, config=self._config.channel)

    def _announce(self) -> None:
        """发送 ready 握手（失败只记日志）。"""

        frame = [READY_VERB, self.process_name, str(os.getpid())]
        try:
            self._outbound().send(frame)
            logger.info("ready announced: pid=%s", os.getpid())
        except (ChannelError, FrameError) as exc:
            logger.warning("ready announce failed: %s", exc)

    def _write_reply(self, frame: Frame) -> bool:
        """
        回写一个 frame。

        返回：
        - True：回复（或兜底 sentinel）已写出
        - False：两次都失败（只记日志）
        """

        try:
            self._outbound().send(frame)
            return True
        except (ChannelError, FrameError) as exc:
            logger.error("%s: failed to write response: %s", self.process_name, exc)
            first_error = exc

        # 只尝试一次通知对端，不递归
        sentinel = make_sentinel(f"{self.process_name}: failed to write response: {first_error}")
        try:
            self._outbound().send(sentinel)
            return True
        except (ChannelError, FrameError) as exc:
            logger.error("%s: failed to write error notice: %s", self.process_name, exc)
            return False

    def serve_one(self, *, accept_timeout_ms: Optional[int] = None) -> Optional[DispatchOutcome]:
        """
        执行恰好一个循环周期。

        参数：
        - accept_timeout_ms：本次 accept 的上限（默认 config.channel.accept_timeout_ms；None 为无限）

        返回：
        - DispatchOutcome：读到并派发了一个 frame
        - None：通道被占用 / accept 超时 / 读到的 frame 被丢弃
        """

        timeout = self._config.channel.accept_timeout_ms if accept_timeout_ms is None else accept_timeout_ms
        listener = InboundListener(self._config.channel.worker_inbound, paths=self._paths, config=self._config.channel)
        try:
            listener.open()
        except ChannelBusyError as exc:
            logger.warning("%s; retry in %sms", exc, self._config.worker.busy_retry_ms)
            self._shutdown.wait(self._config.worker.busy_retry_ms / 1000.0)
            return None
        except ChannelError as exc:
            logger.error("listener failed: %s", exc)
            self._shutdown.wait(self._config.worker.busy_retry_ms / 1000.0)
            return None
        if self._shutdown.is_set():
            listener.close()
            return None

        try:
            if self._announce_pending:
                self._announce_pending = False
                self._announce()
            result = listener.accept_frame(timeout_ms=timeout)
        except ListenTimeoutError:
            return None
        except ChannelError as exc:
            logger.error("accept failed: %s", exc)
            return None
        finally:
            listener.close()

        if not result.ok:
            if not self._shutdown.is_set():
                reason = result.anomaly.reason if result.anomaly else "empty frame"
                logger.info("dropped inbound frame: %s", reason)
            return None

        outcome = self._dispatcher.dispatch(result.frame)
        reply = outcome.reply
        if reply is not None:
            self._write_reply(reply)
        return outcome

    def serve_forever(self) -> None:
        """循环执行 serve_one，直到 stop()。"""

        logger.info("worker %s serving on %s", self.process_name, self._config.channel.worker_inbound)
        while not self._shutdown.is_set():
            self.serve_one()
        logger.info("worker %s stopped", self.process_name)

    def stop(self) -> None:
        """
        请求停止循环（线程安全）。

        说明：
        - 置位 shutdown 后空连接一次自己的 listener：对端立即 EOF，accept 返回一个被丢弃的 frame。
        """

        self._shutdown.set()
        path = self._paths.socket_path(self._config.channel.worker_inbound)
        with contextlib.suppress(OSError):
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
                s.settimeout(0.5)
                s.connect(str(path))


def _build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """把 CLI 参数映射为最后一层配置覆盖。"""

    overrides: Dict[str, Any] = {}
    if args.process_name:
        overrides.setdefault("worker", {})["process_name"] = args.process_name
    if args.announce_ready:
        overrides.setdefault("worker", {})["announce_ready"] = True
    if args.no_announce_ready:
        overrides.setdefault("worker", {})["announce_ready"] = False
    if args.session_process:
        overrides.setdefault("watchdog", {})["session_process_name"] = args.session_process
    if args.channel_dir:
        overrides.setdefault("channel", {})["dir"] = args.channel_dir
    return overrides


def build_parser() -> argparse.ArgumentParser:
    """构造 worker 入口参数解析器。"""

    p = argparse.ArgumentParser(prog="companion-bridge-worker", description="companion bridge worker process")
    p.add_argument("--config", action="append", default=[], help="YAML overlay path (repeatable)")
    p.add_argument("--process-name", default=None, help="worker process name (lookup key and sentinel marker)")
    p.add_argument("--announce-ready", action="store_true", help="send the ready handshake on startup")
    p.add_argument("--no-announce-ready", action="store_true", help="do not send the ready handshake")
    p.add_argument("--session-process", default=None, help="exit when no process with this name exists")
    p.add_argument("--channel-dir", default=None, help="directory holding the channel sockets")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    worker 进程入口（`python -m companion_bridge.worker`）。

    流程：
    - 解析配置（默认 + env overlays + --config + CLI 覆盖）
    - 初始化日志与 rotating error log
    - 启动 session watchdog（若配置了 session 进程名）
    - serve_forever；SIGTERM/SIGINT 触发 stop
    """

    args = build_parser().parse_args(list(argv) if argv is not None else None)
    config_paths: List[Path] = [Path(p) for p in args.config]
    config = resolve_config(config_paths, overrides=_build_overrides(args))

    configure_logging(config)
    configure_error_log(config.logging, label=config.worker.process_name)

    server = WorkerServer(config)

    watchdog: Optional[SessionWatchdog] = None
    if config.watchdog.session_process_name:
        watchdog = SessionWatchdog(config.watchdog.session_process_name, interval_ms=config.watchdog.interval_ms)
        watchdog.start()

    def _on_signal(signum: int, frame: Any) -> None:
        """信号处理：请求停止循环。"""

        _ = frame
        logger.info("signal %s received", signum)
        server.stop()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    try:
        server.serve_forever()
    finally:
        if watchdog is not None:
            watchdog.stop()
    return 0

