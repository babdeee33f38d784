"""
Worker 进程（协议循环 + 媒体操作 + session watchdog）。
"""

from __future__ import annotations
