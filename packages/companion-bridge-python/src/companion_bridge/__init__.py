"""
Companion Bridge（Python）。

说明：
- 本包把“交互式 host 进程”与“后台 worker 进程”配对，让 host 以本地调用的方式执行 worker 上的具名操作。
- 当前包含：
  - Frame 编解码（行分隔字符串列表）
  - 单次使用的 inbound listener / outbound channel（Unix domain socket + lease）
  - 静态 verb 派发表（worker 侧执行操作，host 侧解释回复）
  - WorkerSupervisor（存活检查/拉起/强杀 + readiness 握手）
  - Worker 主循环与 session watchdog
  - 配置加载器（YAML overlay + pydantic 校验）
"""

from __future__ import annotations

from companion_bridge.host.client import BridgeClient
from companion_bridge.host.session import HostSession
from companion_bridge.host.supervisor import WorkerSupervisor
from companion_bridge.worker.server import WorkerServer

__all__ = ["BridgeClient", "HostSession", "WorkerServer", "WorkerSupervisor", "__version__"]

__version__ = "0.3.0"
