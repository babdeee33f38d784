from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil
import pytest
import yaml

import companion_bridge
from companion_bridge.config.defaults import load_default_config_dict
from companion_bridge.config.loader import BridgeConfig, load_config_dicts
from companion_bridge.core import processes
from companion_bridge.host import supervisor as supervisor_mod
from companion_bridge.host.client import BridgeClient
from companion_bridge.host.supervisor import EFFECTIVE_CONFIG_NAME, WORKER_MODULE, WorkerSupervisor
from companion_bridge.transport.paths import get_channel_paths


def _config(tmp_path: Path, **sections: Dict[str, Any]) -> BridgeConfig:
    """构造测试配置：通道目录与 error log 都落在 tmp_path 下。"""

    base = {
        "channel": {"dir": str(tmp_path / "ch")},
        "logging": {"error_log_path": str(tmp_path / "errors.log")},
    }
    return load_config_dicts([load_default_config_dict(), base, dict(sections)])


class _FakeProc:
    """psutil.Process 替身（只提供 info/pid/kill）。"""

    def __init__(self, pid: int, name: str, cmdline: List[str], *, kill_error: Optional[BaseException] = None) -> None:
        """
        参数：
        - pid/name/cmdline：`process_iter(attrs)` 预取的字段
        - kill_error：kill 时抛出的异常（可选）
        """

        self.pid = pid
        self.info = {"pid": pid, "name": name, "cmdline": cmdline}
        self.killed = False
        self._kill_error = kill_error

    def kill(self) -> None:
        """记录 kill。"""

        if self._kill_error is not None:
            raise self._kill_error
        self.killed = True


def _patch_process_table(monkeypatch, procs: List[_FakeProc]) -> None:  # type: ignore[no-untyped-def]
    """替换 psutil.process_iter 的返回值。"""

    monkeypatch.setattr(processes.psutil, "process_iter", lambda attrs=None: iter(procs))


def test_name_lookup_matches_name_argv0_and_flag(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    by_name = _FakeProc(101, "companion_worker", [])
    by_argv0 = _FakeProc(102, "python3", ["/opt/apps/companion_worker.exe", "--x"])
    by_flag = _FakeProc(103, "python3", [sys.executable, "-m", WORKER_MODULE, "--process-name", "companion_worker"])
    by_flag_eq = _FakeProc(104, "python3", ["python3", "--process-name=companion_worker"])
    other = _FakeProc(105, "bash", ["bash", "--process-name", "someone_else"])
    _patch_process_table(monkeypatch, [by_name, by_argv0, by_flag, by_flag_eq, other])

    found = [p.pid for p in processes.iter_processes_named("companion_worker")]
    assert found == [101, 102, 103, 104]
    assert processes.is_process_running("companion_worker")
    assert not processes.is_process_running("nothing_here")


def test_name_lookup_never_matches_current_process(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    me = _FakeProc(os.getpid(), "companion_worker", [])
    _patch_process_table(monkeypatch, [me])

    assert not processes.is_process_running("companion_worker")
    assert processes.kill_processes_named("companion_worker") == 0
    assert me.killed is False


def test_kill_by_name_skips_vanished_processes(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    alive = _FakeProc(201, "companion_worker", [])
    gone = _FakeProc(202, "companion_worker", [], kill_error=psutil.NoSuchProcess(202))
    _patch_process_table(monkeypatch, [alive, gone])

    assert processes.kill_processes_named("companion_worker") == 1
    assert alive.killed is True


def test_kill_by_name_never_raises(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    def _boom(attrs=None):  # type: ignore[no-untyped-def]
        """模拟进程表不可读。"""

        raise RuntimeError("process table unavailable")

    monkeypatch.setattr(processes.psutil, "process_iter", _boom)
    assert processes.kill_processes_named("companion_worker") == 0


def test_launch_fails_when_executable_is_missing(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    cfg = _config(tmp_path, worker={"executable": "missing_worker.exe", "apps_dir": str(tmp_path)})

    def _no_spawn(*args: Any, **kwargs: Any) -> None:
        """spawn 不应该被调用。"""

        raise AssertionError("Popen must not be called")

    monkeypatch.setattr(supervisor_mod.subprocess, "Popen", _no_spawn)
    sup = WorkerSupervisor(cfg)
    assert sup.launch() is False
    assert sup.pid is None


def test_launch_fails_when_spawn_raises(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    cfg = _config(tmp_path)

    def _spawn_error(*args: Any, **kwargs: Any) -> None:
        """模拟 exec 失败。"""

        raise PermissionError("not executable")

    monkeypatch.setattr(supervisor_mod.subprocess, "Popen", _spawn_error)
    sup = WorkerSupervisor(cfg)
    assert sup.launch() is False

    # 等待握手用的 host inbound 已释放
    paths = get_channel_paths(cfg.channel)
    assert not paths.socket_path(cfg.channel.host_inbound).exists()


def test_worker_argv_carries_name_config_and_session(tmp_path: Path) -> None:
    cfg = _config(tmp_path, worker={"process_name": "cbw_argv"}, watchdog={"session_process_name": "HostApp"})
    sup = WorkerSupervisor(cfg)

    argv = sup._worker_argv(announce=True)
    assert argv is not None
    assert argv[:3] == [sys.executable, "-m", WORKER_MODULE]
    assert argv[argv.index("--process-name") + 1] == "cbw_argv"
    assert argv[argv.index("--session-process") + 1] == "HostApp"
    assert "--announce-ready" in argv

    config_path = Path(argv[argv.index("--config") + 1])
    assert config_path.name == EFFECTIVE_CONFIG_NAME
    effective = BridgeConfig.model_validate(yaml.safe_load(config_path.read_text(encoding="utf-8")))
    assert effective.channel.dir == str(get_channel_paths(cfg.channel).channel_dir)
    assert effective.worker.process_name == "cbw_argv"


def test_worker_env_has_absolute_pythonpath(tmp_path: Path) -> None:
    cfg = _config(tmp_path)
    sup = WorkerSupervisor(cfg, env={"PYTHONPATH": "relative/src", "HOME": str(tmp_path)})
    env = sup._worker_env()
    assert Path(env["PYTHONPATH"]).is_absolute()
    assert env["HOME"] == str(tmp_path)

    bare = WorkerSupervisor(cfg, env={})._worker_env()
    assert bare["PYTHONPATH"] == str(Path(companion_bridge.__file__).resolve().parent.parent)


def test_ensure_running_does_not_launch_when_alive(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    cfg = _config(tmp_path)
    monkeypatch.setattr(supervisor_mod, "is_process_running", lambda name: True)
    sup = WorkerSupervisor(cfg)
    monkeypatch.setattr(sup, "launch", lambda wait_ready=None: pytest.fail("launch must not be called"))
    assert sup.ensure_running() is True


def test_is_running_is_false_when_lookup_fails(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    cfg = _config(tmp_path)

    def _lookup_error(name: str) -> bool:
        """模拟进程表不可读。"""

        raise psutil.AccessDenied()

    monkeypatch.setattr(supervisor_mod, "is_process_running", _lookup_error)
    assert WorkerSupervisor(cfg).is_running() is False


def test_terminate_swallows_errors(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    cfg = _config(tmp_path)

    def _kill_error(name: str) -> int:
        """模拟 kill 失败。"""

        raise RuntimeError("kill failed")

    monkeypatch.setattr(supervisor_mod, "kill_processes_named", _kill_error)
    WorkerSupervisor(cfg).terminate()


@pytest.mark.skipif(os.name == "nt", reason="unix domain sockets only")
def test_launch_handshake_call_and_terminate(tmp_path: Path) -> None:
    """
    集成：真实子进程。

    断言：
    - launch 在收到 ready 后返回 True（之后的第一个请求不会丢）；
    - 缺失的音频文件以 sentinel 形式返回（不触网）；
    - terminate 之后进程不再存活。
    """

    name = f"cbw_{os.getpid()}"
    cfg = _config(tmp_path, worker={"process_name": name, "ready_timeout_ms": 15000})
    paths = get_channel_paths(cfg.channel)
    sup = WorkerSupervisor(cfg, paths=paths)
    try:
        assert sup.launch() is True, (paths.log_path("worker.stderr.log").read_text(encoding="utf-8", errors="replace"))
        assert sup.pid is not None
        assert sup.is_running()

        client = BridgeClient(cfg, paths=paths)
        reply = client.call(["transcribe", "sk-test", str(tmp_path / "missing.wav")], timeout_ms=10000)
        assert client.is_failure(reply)
        assert reply[0].startswith("Whisper Transcription Error:")
        assert reply[1] == "error"
    finally:
        pid = sup.pid
        sup.terminate()

    assert sup.pid is None
    if pid is not None:
        assert not psutil.pid_exists(pid)
