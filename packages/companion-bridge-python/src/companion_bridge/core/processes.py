"""
按名字查找/终止进程（psutil）。

说明：
- 名字匹配是粗粒度的：进程名、argv[0] 的 basename（去扩展名）、或 cmdline 中的 `--process-name <name>`
  任一命中即算；不校验身份，也不区分多实例。
- 当前进程永远不会被匹配，避免 terminate 误杀自己。
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator, Sequence

import psutil

logger = logging.getLogger(__name__)

_NAME_FLAG = "--process-name"


def _cmdline_matches(cmdline: Sequence[str], name: str) -> bool:
    """判断 cmdline 是否命中名字（argv[0] basename 或 `--process-name` 参数）。"""

    if not cmdline:
        return False
    if Path(str(cmdline[0])).stem == name:
        return True
    for i, arg in enumerate(cmdline):
        if arg == _NAME_FLAG and i + 1 < len(cmdline) and cmdline[i + 1] == name:
            return True
        if arg == f"{_NAME_FLAG}={name}":
            return True
    return False


def iter_processes_named(name: str) -> Iterator[psutil.Process]:
    """
    遍历名字匹配的进程（不含当前进程）。

    参数：
    - name：进程名（例如 worker 的 process_name）
    """

    me = os.getpid()
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            info = proc.info
            if int(info.get("pid") or 0) == me:
                continue
            pname = str(info.get("name") or "")
            if pname == name or Path(pname).stem == name:
                yield proc
                continue
            if _cmdline_matches(info.get("cmdline") or [], name):
                yield proc
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue


def is_process_running(name: str) -> bool:
    """是否至少存在一个名字匹配的进程。"""

    for _ in iter_processes_named(name):
        return True
    return False


def kill_processes_named(name: str) -> int:
    """
    强杀所有名字匹配的进程（best-effort，从不抛异常）。

    返回：
    - 发出 kill 的进程数
    """

    killed = 0
    try:
        for proc in list(iter_processes_named(name)):
            try:
                proc.kill()
                killed += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
                logger.debug("kill skipped: pid=%s err=%s", proc.pid, exc)
    except Exception as exc:
        logger.warning("process scan failed: name=%s err=%s", name, exc)
    return killed
