"""
Host session（对自动化层暴露的入口：initialize / invoke / shutdown）。

说明：
- invoke 把阻塞的发送/接收放到后台线程执行，调用线程等待完成信号，随后复位信号以便复用。
  从调用方看，这是“调用并阻塞”的同步语义；同一时刻只有一个进行中的调用。
- context 内的任何失败只体现为 `Bridge_Error=True` + rotating error log 中的一条记录，绝不向调用方抛出。
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Mapping, Optional

from companion_bridge.config.loader import BridgeConfig
from companion_bridge.dispatch.dispatcher import OUTCOME_FAILED, DispatchOutcome, FrameDispatcher
from companion_bridge.host import variables as V
from companion_bridge.host.client import BridgeClient
from companion_bridge.host.contexts import ContextDeps, build_context_dispatcher
from companion_bridge.host.supervisor import WorkerSupervisor
from companion_bridge.host.variables import SessionVariables
from companion_bridge.observability.error_log import configure_error_log
from companion_bridge.transport.paths import ChannelPaths, get_channel_paths

logger = logging.getLogger(__name__)

ERROR_LOG_LABEL = "Host"


class HostSession:
    """host 侧会话：持有 supervisor、client 与变量表。"""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        variables: Optional[SessionVariables] = None,
        paths: Optional[ChannelPaths] = None,
        supervisor: Optional[WorkerSupervisor] = None,
        client: Optional[BridgeClient] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        参数：
        - config：已校验的配置
        - variables：共享变量表（默认新建）
        - paths/supervisor/client：可注入（测试用）；默认按 config 构造
        - env：凭据环境变量来源（默认 os.environ）
        """

        self._config = config
        self._paths = paths or get_channel_paths(config.channel)
        self.variables = variables or SessionVariables()
        self.supervisor = supervisor or WorkerSupervisor(config, paths=self._paths)
        self.client = client or BridgeClient(config, paths=self._paths)
        deps = ContextDeps(config=config, client=self.client, variables=self.variables, env=os.environ if env is None else env)
        self._dispatcher: FrameDispatcher = build_context_dispatcher(deps)
        self._completed = threading.Event()
        self._call_lock = threading.Lock()
        self._initialized = False
        self.error_log_path: Optional[Path] = None

    @property
    def initialized(self) -> bool:
        """initialize 是否已成功执行。"""

        return self._initialized

    def initialize(self, *, launch: bool = True) -> bool:
        """
        初始化：挂载 rotating error log，并（可选）拉起 worker。

        返回：
        - worker 是否处于可用状态（launch=False 时恒为 True）
        """

        self.error_log_path = configure_error_log(self._config.logging, label=ERROR_LOG_LABEL)
        ok = True
        if launch:
            ok = self.supervisor.ensure_running()
            if not ok:
                logger.error("worker %s could not be started", self._config.worker.process_name)
        self._initialized = True
        self.variables.set_bool(V.INITIALIZED, True)
        return ok

    def invoke(self, context: str) -> bool:
        """
        执行一个 context（调用并阻塞）。

        返回：
        - True：成功（`Bridge_Error` 未置位）
        - False：失败或被跳过（`Bridge_Error=True`）

        说明：
        - 未知 context 是静默 no-op，返回 True。
        """

        if not self._initialized:
            self.variables.set_bool(V.ERROR, True)
            logger.error("session not initialized; context %s skipped", context)
            return False

        with self._call_lock:
            self.variables.set_bool(V.ERROR, False)
            self.variables.set_text(V.RESPONSE, "")
            try:
                return self._run_context(context)
            finally:
                # 单次调用的输入不跨调用保留
                for name in (V.AUDIO_FILE, V.IMAGE_PATH, V.USER_INPUT):
                    self.variables.set_text(name, None)

    def _run_context(self, context: str) -> bool:
        """在后台线程执行 context 并等待完成；调用方持有 _call_lock。"""

        if not self.supervisor.ensure_running():
            self.variables.set_bool(V.ERROR, True)
            logger.error("worker %s is not running; context %s skipped", self._config.worker.process_name, context)
            return False

        holder: dict[str, DispatchOutcome] = {}

        def _run() -> None:
            """后台线程：执行 context，然后发出完成信号。"""

            try:
                holder["outcome"] = self._dispatcher.dispatch([context])
            finally:
                self._completed.set()

        t = threading.Thread(target=_run, name=f"bridge-{context}", daemon=True)
        t.start()
        self._completed.wait()
        self._completed.clear()

        outcome = holder.get("outcome")
        if outcome is not None and outcome.status == OUTCOME_FAILED:
            # 错误详情已由派发层写入 error log
            self.variables.set_bool(V.ERROR, True)
        return not bool(self.variables.get_bool(V.ERROR))

    def shutdown(self) -> None:
        """结束 session：强杀 worker（best-effort）。"""

        self.supervisor.terminate()
        self.variables.set_bool(V.INITIALIZED, False)
        self._initialized = False
