"""
Companion Bridge CLI（worker/call/invoke/status/stop）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；尽量在失败时也输出 JSON

Exit codes：
- 0：成功
- 1：worker 回复被判定为失败（sentinel）/ context 置位了错误标志
- 2：参数错误（argparse）
- 10：配置无效
- 20：通道传输失败
- 21：请求 frame 不满足契约
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from pydantic import ValidationError

from companion_bridge import bootstrap
from companion_bridge.config.loader import BridgeConfig
from companion_bridge.core.errors import ChannelError, FrameError
from companion_bridge.host.client import BridgeClient
from companion_bridge.host.contexts import CONTEXTS
from companion_bridge.host.session import HostSession
from companion_bridge.host.supervisor import WorkerSupervisor
from companion_bridge.transport.paths import get_channel_paths
from companion_bridge.worker import server as worker_server

EXIT_OK = 0
EXIT_FAILED_REPLY = 1
EXIT_CONFIG_INVALID = 10
EXIT_CHANNEL_ERROR = 20
EXIT_FRAME_INVALID = 21


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="companion-bridge",
        description="Companion Bridge CLI（worker/call/invoke/status/stop）。",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--channel-dir", default=None, help="Directory holding the channel sockets.")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    worker = root_sub.add_parser("worker", help="Run the worker loop in the foreground")
    worker.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
    worker.add_argument("--channel-dir", default=None, help="Directory holding the channel sockets.")
    worker.add_argument("--process-name", default=None, help="Worker process name.")
    worker.add_argument("--session-process", default=None, help="Exit when no process with this name exists.")
    worker.add_argument("--announce-ready", action="store_true", help="Send the ready handshake on startup.")

    call = root_sub.add_parser("call", help="Send one request frame and print the reply")
    _add_common_flags(call)
    call.add_argument("frame", nargs="+", help="Request elements: VERB CREDENTIAL ARG...")
    call.add_argument("--timeout-ms", type=int, default=None, help="Reply timeout (default: channel.response_timeout_ms; unset waits forever).")
    call.add_argument("--ensure-worker", action="store_true", help="Launch the worker first if it is not running.")

    invoke = root_sub.add_parser("invoke", help="Run a host context against session variables")
    _add_common_flags(invoke)
    invoke.add_argument("context", help=f"Context name ({', '.join(CONTEXTS)}).")
    invoke.add_argument("--var", action="append", default=[], help="Session text variable NAME=VALUE (repeatable).")
    invoke.add_argument("--keep-worker", action="store_true", help="Leave the worker running after the context finishes.")

    status = root_sub.add_parser("status", help="Report whether the worker is running")
    _add_common_flags(status)

    stop = root_sub.add_parser("stop", help="Kill every worker process with the configured name")
    _add_common_flags(stop)

    return parser


def _load_config(args: argparse.Namespace) -> BridgeConfig:
    """按 CLI 参数解析有效配置。"""

    overrides: Dict[str, Any] = {}
    if getattr(args, "channel_dir", None):
        overrides["channel"] = {"dir": args.channel_dir}
    return bootstrap.resolve_config([Path(p) for p in args.config], overrides=overrides)


def _config_error(exc: Exception, *, pretty: bool) -> int:
    """输出配置错误 JSON 并返回 exit code。"""

    _dump_json_to_stdout({"ok": False, "error_kind": "config", "error": str(exc)}, pretty=pretty)
    return EXIT_CONFIG_INVALID


def _handle_worker(args: argparse.Namespace) -> int:
    """前台运行 worker 循环。"""

    argv: List[str] = []
    for p in args.config:
        argv += ["--config", p]
    if args.channel_dir:
        argv += ["--channel-dir", args.channel_dir]
    if args.process_name:
        argv += ["--process-name", args.process_name]
    if args.session_process:
        argv += ["--session-process", args.session_process]
    if args.announce_ready:
        argv.append("--announce-ready")
    return worker_server.main(argv)


def _handle_call(args: argparse.Namespace, config: BridgeConfig) -> int:
    """发送一个请求并输出回复。"""

    paths = get_channel_paths(config.channel)
    if args.ensure_worker and not WorkerSupervisor(config, paths=paths).ensure_running():
        _dump_json_to_stdout({"ok": False, "error_kind": "supervisor", "error": "worker could not be started"}, pretty=args.pretty)
        return EXIT_CHANNEL_ERROR

    client = BridgeClient(config, paths=paths)
    try:
        kwargs: Dict[str, Any] = {} if args.timeout_ms is None else {"timeout_ms": args.timeout_ms}
        reply = client.call(args.frame, **kwargs)
    except FrameError as exc:
        _dump_json_to_stdout({"ok": False, "error_kind": "frame", "error": str(exc)}, pretty=args.pretty)
        return EXIT_FRAME_INVALID
    except ChannelError as exc:
        _dump_json_to_stdout(
            {"ok": False, "error_kind": type(exc).__name__, "error": str(exc), "channel": exc.channel},
            pretty=args.pretty,
        )
        return EXIT_CHANNEL_ERROR

    failed = client.is_failure(reply)
    _dump_json_to_stdout({"ok": not failed, "frame": reply}, pretty=args.pretty)
    return EXIT_FAILED_REPLY if failed else EXIT_OK


def _handle_invoke(args: argparse.Namespace, config: BridgeConfig) -> int:
    """执行一个 host context 并输出变量快照；默认结束时关闭 worker（--keep-worker 保留）。"""

    session = HostSession(config)
    for item in args.var:
        name, sep, value = str(item).partition("=")
        if not sep or not name.strip():
            _dump_json_to_stdout({"ok": False, "error_kind": "usage", "error": f"invalid --var: {item!r}"}, pretty=args.pretty)
            return 2
        session.variables.set_text(name.strip(), value)
    session.initialize()
    try:
        ok = session.invoke(args.context)
        snapshot = session.variables.snapshot()
    finally:
        if not args.keep_worker:
            session.shutdown()
    _dump_json_to_stdout({"ok": ok, "context": args.context, "variables": snapshot}, pretty=args.pretty)
    return EXIT_OK if ok else EXIT_FAILED_REPLY


def _handle_status(args: argparse.Namespace, config: BridgeConfig) -> int:
    """输出 worker 存活状态与通道文件。"""

    paths = get_channel_paths(config.channel)
    supervisor = WorkerSupervisor(config, paths=paths)
    names = [config.channel.worker_inbound, config.channel.host_inbound]
    _dump_json_to_stdout(
        {
            "ok": True,
            "process_name": config.worker.process_name,
            "running": supervisor.is_running(),
            "channel_dir": str(paths.channel_dir),
            "listening": {n: paths.socket_path(n).exists() for n in names},
        },
        pretty=args.pretty,
    )
    return EXIT_OK


def _handle_stop(args: argparse.Namespace, config: BridgeConfig) -> int:
    """强杀所有同名 worker。"""

    supervisor = WorkerSupervisor(config)
    supervisor.terminate()
    _dump_json_to_stdout({"ok": True, "process_name": config.worker.process_name, "running": supervisor.is_running()}, pretty=args.pretty)
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # `--help` 为 0；参数错误为 2
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    if args.command == "worker":
        return _handle_worker(args)

    try:
        config = _load_config(args)
    except (ValidationError, FileNotFoundError, ValueError, yaml.YAMLError) as exc:
        return _config_error(exc, pretty=args.pretty)

    if args.command == "call":
        return _handle_call(args, config)
    if args.command == "invoke":
        return _handle_invoke(args, config)
    if args.command == "status":
        return _handle_status(args, config)
    if args.command == "stop":
        return _handle_stop(args, config)
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
