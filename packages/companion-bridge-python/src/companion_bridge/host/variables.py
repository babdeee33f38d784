"""
Session 变量表（host 与其自动化层共享的 text/bool 变量）。
"""

from __future__ import annotations

import threading
from typing import Dict, Optional

ERROR = "Bridge_Error"
RESPONSE = "Bridge_Response"
USER_INPUT = "Bridge_UserInput"
AUDIO_PATH = "Bridge_AudioPath"
AUDIO_FILE = "Bridge_AudioFile"
IMAGE_PROMPT = "Bridge_ImagePrompt"
IMAGE_PATH = "Bridge_ImagePath"
IMAGE_COUNT = "Bridge_ImageCount"
IMAGE_SIZE = "Bridge_ImageSize"
IMAGE_MASK_PATH = "Bridge_ImageMaskPath"
INITIALIZED = "Bridge_Initialized"


class SessionVariables:
    """线程安全的 text/bool 变量表（未设置时读到 None）。"""

    def __init__(self) -> None:
        """创建空变量表。"""

        self._lock = threading.Lock()
        self._text: Dict[str, Optional[str]] = {}
        self._bool: Dict[str, Optional[bool]] = {}

    def get_text(self, name: str) -> Optional[str]:
        """读取 text 变量。"""

        with self._lock:
            return self._text.get(name)

    def set_text(self, name: str, value: Optional[str]) -> None:
        """写入 text 变量（None 表示清除）。"""

        with self._lock:
            self._text[name] = None if value is None else str(value)

    def get_bool(self, name: str) -> Optional[bool]:
        """读取 bool 变量。"""

        with self._lock:
            return self._bool.get(name)

    def set_bool(self, name: str, value: Optional[bool]) -> None:
        """写入 bool 变量（None 表示清除）。"""

        with self._lock:
            self._bool[name] = None if value is None else bool(value)

    def snapshot(self) -> Dict[str, object]:
        """返回当前全部变量的浅拷贝（CLI 输出用）。"""

        with self._lock:
            out: Dict[str, object] = {k: v for k, v in self._text.items() if v is not None}
            out.update({k: v for k, v in self._bool.items() if v is not None})
            return out
