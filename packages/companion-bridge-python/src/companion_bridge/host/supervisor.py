"""
Worker 进程 supervisor（存活检查 / 拉起 / 强杀）。

说明：
- 优先使用自己持有的 Popen 句柄判断存活；没有句柄时退化为按名字查找（粗粒度，不区分多实例）。
- launch 默认等待 worker 的 ready 握手：先打开 host inbound listener，再 spawn，最后等 `ready` frame。
  关闭握手时保留原始行为（不等待），冷启动后的第一个请求可能丢失。
- terminate 永远 best-effort：吞掉所有错误，不杀当前进程。
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from companion_bridge.config.loader import BridgeConfig
from companion_bridge.core.errors import ChannelError, ListenTimeoutError
from companion_bridge.core.processes import is_process_running, kill_processes_named
from companion_bridge.transport.channel import InboundListener
from companion_bridge.transport.paths import ChannelPaths, get_channel_paths

logger = logging.getLogger(__name__)

WORKER_MODULE = "companion_bridge.worker"
EFFECTIVE_CONFIG_NAME = "worker.effective.yaml"
STDOUT_LOG_NAME = "worker.stdout.log"
STDERR_LOG_NAME = "worker.stderr.log"


def _stderr_tail(path: Path, limit: int = 2000) -> str:
    """读取 stderr 日志尾部（便于定位启动失败）。"""

    try:
        if path.exists():
            return path.read_bytes()[-limit:].decode("utf-8", errors="replace").strip()
    except OSError:
        return ""
    return ""


class WorkerSupervisor:
    """管理一个 worker 进程的生命周期。"""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        paths: Optional[ChannelPaths] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        参数：
        - config：已校验的配置
        - paths：通道路径（默认按 config.channel 推导）
        - env：传给 worker 的环境（默认继承 os.environ）
        """

        self._config = config
        self._paths = paths or get_channel_paths(config.channel)
        self._env = dict(env) if env is not None else None
        self._proc: Optional[subprocess.Popen] = None

    @property
    def process_name(self) -> str:
        """worker 进程名。"""

        return self._config.worker.process_name

    @property
    def pid(self) -> Optional[int]:
        """自己持有的 worker pid（没有或已退出时为 None）。"""

        if self._proc is not None and self._proc.poll() is None:
            return int(self._proc.pid)
        return None

    def is_running(self) -> bool:
        """worker 是否存活（句柄优先，名字查找兜底）。"""

        if self._proc is not None and self._proc.poll() is None:
            return True
        try:
            return is_process_running(self.process_name)
        except Exception as exc:
            logger.warning("process lookup failed: %s", exc)
            return False

    def _resolve_executable(self) -> Optional[Path]:
        """
        解析配置的 worker 可执行文件（相对路径相对 apps_dir，默认 cwd）。

        返回：
        - Path：存在的可执行文件
        - None：未配置（使用当前解释器 `-m` 启动）
        """

        raw = self._config.worker.executable
        if not raw:
            return None
        p = Path(raw).expanduser()
        if not p.is_absolute():
            base = Path(self._config.worker.apps_dir).expanduser() if self._config.worker.apps_dir else Path.cwd()
            p = base / p
        return p.resolve()

    def _write_effective_config(self) -> Path:
        """把当前配置落盘到通道目录，供 worker 以 `--config` 读取（两端通道目录/名字一致）。"""

        data = self._config.model_dump(mode="json")
        data["channel"]["dir"] = str(self._paths.channel_dir)
        path = self._paths.log_path(EFFECTIVE_CONFIG_NAME)
        path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
        return path

    def _worker_argv(self, *, announce: bool) -> Optional[List[str]]:
        """构造 worker argv；可执行文件缺失时返回 None。"""

        exe = self._resolve_executable()
        if exe is None:
            argv = [sys.executable, "-m", WORKER_MODULE]
        else:
            if not exe.exists():
                logger.error("worker executable not found: %s", exe)
                return None
            argv = [str(exe)]
        argv += [
            "--process-name",
            self.process_name,
            "--config",
            str(self._write_effective_config()),
            "--announce-ready" if announce else "--no-announce-ready",
        ]
        if self._config.watchdog.session_process_name:
            argv += ["--session-process", self._config.watchdog.session_process_name]
        return argv

    def _worker_env(self) -> Dict[str, str]:
        """构造 worker 环境（补齐绝对 PYTHONPATH，避免子进程 import 失败）。"""

        env = dict(self._env if self._env is not None else os.environ)

        # 当前进程可能通过 sys.path（pytest pythonpath）加载本包，而环境里没有 PYTHONPATH。
        if not str(env.get("PYTHONPATH") or "").strip():
            import companion_bridge as _pkg  # local import to avoid circular

            env["PYTHONPATH"] = str(Path(_pkg.__file__).resolve().parent.parent)

        # 相对 PYTHONPATH 在 cwd 不同的子进程里会失效：统一归一化为绝对路径。
        parts = []
        base = Path.cwd().resolve()
        for raw in str(env.get("PYTHONPATH") or "").split(os.pathsep):
            if not raw:
                continue
            p = Path(raw)
            if not p.is_absolute():
                p = (base / p).resolve()
            parts.append(str(p))
        if parts:
            env["PYTHONPATH"] = os.pathsep.join(parts)
        return env

    def launch(self, wait_ready: Optional[bool] = None) -> bool:
        """
        拉起 worker。

        参数：
        - wait_ready：是否等待 ready 握手（默认 config.worker.announce_ready）

        返回：
        - True：已 spawn（并在需要时收到 ready）
        - False：可执行文件缺失 / spawn 失败 / 握手超时（均已记日志）
        """

        wait = self._config.worker.announce_ready if wait_ready is None else bool(wait_ready)
        argv = self._worker_argv(announce=wait)
        if argv is None:
            return False

        listener: Optional[InboundListener] = None
        if wait:
            listener = InboundListener(self._config.channel.host_inbound, paths=self._paths, config=self._config.channel)
            try:
                listener.open()
            except ChannelError as exc:
                logger.error("cannot wait for worker handshake: %s", exc)
                return False

        stdout_log = self._paths.log_path(STDOUT_LOG_NAME)
        stderr_log = self._paths.log_path(STDERR_LOG_NAME)
        try:
            with open(stdout_log, "ab") as out_f, open(stderr_log, "ab") as err_f:
                self._proc = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=str(self._paths.channel_dir),
                    env=self._worker_env(),
                    stdout=out_f,
                    stderr=err_f,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                    close_fds=True,
                )
        except OSError as exc:
            logger.error("failed to launch worker %s: %s", self.process_name, exc)
            if listener is not None:
                listener.close()
            return False

        logger.info("worker launched: name=%s pid=%s", self.process_name, self._proc.pid)
        if listener is None:
            return True

        try:
            result = listener.accept_frame(timeout_ms=self._config.worker.ready_timeout_ms)
        except ListenTimeoutError:
            tail = _stderr_tail(stderr_log)
            msg = f"worker {self.process_name} did not announce ready within {self._config.worker.ready_timeout_ms}ms"
            if tail:
                msg += f"; worker.stderr.tail={tail!r}"
            logger.error(msg)
            return False
        except ChannelError as exc:
            logger.error("worker handshake failed: %s", exc)
            return False
        finally:
            listener.close()

        if result.ok and result.frame[0] == "ready":
            logger.info("worker ready: %s", result.frame[1:])
            return True
        logger.error("unexpected handshake frame: %s", result.frame)
        return False

    def ensure_running(self) -> bool:
        """存活则直接返回 True，否则 launch。"""

        if self.is_running():
            return True
        return self.launch()

    def terminate(self) -> None:
        """强杀持有的句柄以及所有同名 worker（best-effort，从不抛异常）。"""

        proc, self._proc = self._proc, None
        if proc is not None:
            try:
                if proc.poll() is None:
                    proc.kill()
                proc.wait(timeout=2.0)
            except Exception as exc:
                logger.debug("terminate owned worker failed: %s", exc)
        try:
            n = kill_processes_named(self.process_name)
            if n:
                logger.info("killed %d process(es) named %s", n, self.process_name)
        except Exception as exc:
            logger.debug("terminate by name failed: %s", exc)
