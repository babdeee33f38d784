"""
Host 侧 context（解释 worker 回复的本地延续）。

说明：
- context 名 -> handler 的静态表，复用 FrameDispatcher：未知 context 是静默 no-op。
- 每个 handler 从 session 变量组装请求 frame，调用 worker，再把回复写回变量。
- 可选参数为空时用默认值替换（或直接省略），保证请求里永远没有空元素。
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping

from companion_bridge.config.loader import BridgeConfig
from companion_bridge.core.errors import OperationError
from companion_bridge.dispatch.dispatcher import FrameDispatcher, Handler
from companion_bridge.host import variables as V
from companion_bridge.host.client import BridgeClient
from companion_bridge.host.variables import SessionVariables
from companion_bridge.protocol.frame import Frame
from companion_bridge.worker.credentials import format_credential
from companion_bridge.worker.handlers import (
    IMAGE_EDIT,
    IMAGE_EDIT_BYTES,
    IMAGE_GENERATE,
    IMAGE_VARIATION,
    IMAGE_VARIATION_BYTES,
    TRANSCRIBE,
    TRANSLATE,
)

logger = logging.getLogger(__name__)

DEFAULT_AUDIO_ERROR = "Error processing audio file."
DEFAULT_IMAGE_COUNT = "1"


@dataclass
class ContextDeps:
    """context handler 的依赖集合。"""

    config: BridgeConfig
    client: BridgeClient
    variables: SessionVariables
    env: Mapping[str, str] = field(default_factory=lambda: os.environ)
    sleep: Callable[[float], None] = time.sleep

    def credential(self) -> str:
        """从环境变量读取凭据并按 `key[:org]` 拼接。"""

        host = self.config.host
        key = str(self.env.get(host.api_key_env) or "").strip()
        if not key:
            raise OperationError(f"missing API key: env {host.api_key_env} is not set")
        org = str(self.env.get(host.org_env) or "").strip() if host.org_env else ""
        return format_credential(key, org or None)


def _text(deps: ContextDeps, name: str) -> str:
    """读取 text 变量（未设置为空串）。"""

    return (deps.variables.get_text(name) or "").strip()


def wait_for_file(path: Path, *, timeout_ms: int, interval_ms: int, sleep: Callable[[float], None] = time.sleep) -> None:
    """
    轮询等待文件出现（录音文件可能仍在落盘）。

    异常：
    - OperationError：超时仍不存在
    """

    deadline = time.monotonic() + timeout_ms / 1000.0
    while not path.exists():
        if time.monotonic() >= deadline:
            raise OperationError(f"Dictation Audio File not found: {path}")
        sleep(interval_ms / 1000.0)


def _apply_reply(deps: ContextDeps, context: str, reply: Frame, *, joined: bool, default_error: str) -> None:
    """
    按 sentinel 约定把回复写回变量。

    参数：
    - joined：True 时把所有元素以 `;` 连接（图片 URL 列表）；否则只取首元素
    """

    if deps.client.is_failure(reply):
        message = reply[0] if reply and reply[0] else default_error
        deps.variables.set_bool(V.ERROR, True)
        deps.variables.set_text(V.RESPONSE, message)
        logger.error("%s failed: %s", context, message)
        return
    deps.variables.set_text(V.RESPONSE, ";".join(reply) if joined else reply[0])


def _whisper(deps: ContextDeps, context: str, operation: str) -> Frame:
    """转写/翻译：解析音频路径 -> 等待文件 -> 调用 worker。"""

    raw = _text(deps, V.AUDIO_PATH) or _text(deps, V.AUDIO_FILE) or (deps.config.host.default_audio_path or "")
    if not raw:
        raise OperationError("no audio file path: set Bridge_AudioPath or host.default_audio_path")
    path = Path(raw).expanduser()
    host = deps.config.host
    wait_for_file(path, timeout_ms=host.audio_wait_timeout_ms, interval_ms=host.audio_wait_interval_ms, sleep=deps.sleep)

    reply = deps.client.call([operation, deps.credential(), str(path)])
    _apply_reply(deps, context, reply, joined=False, default_error=DEFAULT_AUDIO_ERROR)
    if not deps.variables.get_bool(V.ERROR):
        deps.variables.set_text(V.USER_INPUT, deps.variables.get_text(V.RESPONSE))
    return reply


def _image_options(deps: ContextDeps) -> List[str]:
    """图片数量与尺寸（为空时使用默认值）。"""

    count = _text(deps, V.IMAGE_COUNT) or DEFAULT_IMAGE_COUNT
    size = _text(deps, V.IMAGE_SIZE) or deps.config.provider.default_image_size
    return [count, size]


def _require(deps: ContextDeps, name: str, what: str) -> str:
    """读取必填变量；为空时失败。"""

    value = _text(deps, name)
    if not value:
        raise OperationError(f"{what} in {name} text variable is null or empty!")
    return value


def _dalle_generation(deps: ContextDeps, context: str) -> Frame:
    """`image.generate`。"""

    prompt = _require(deps, V.IMAGE_PROMPT, "Image prompt")
    reply = deps.client.call([IMAGE_GENERATE, deps.credential(), prompt, *_image_options(deps)])
    _apply_reply(deps, context, reply, joined=True, default_error="Image generation failed.")
    return reply


def _dalle_variation(deps: ContextDeps, context: str, *, in_memory: bool) -> Frame:
    """`image.variation[.bytes]`。"""

    path = _require(deps, V.IMAGE_PATH, "File path")
    verb = IMAGE_VARIATION_BYTES if in_memory else IMAGE_VARIATION
    reply = deps.client.call([verb, deps.credential(), path, *_image_options(deps)])
    _apply_reply(deps, context, reply, joined=True, default_error="Image variation failed.")
    return reply


def _dalle_editing(deps: ContextDeps, context: str, *, in_memory: bool) -> Frame:
    """`image.edit[.bytes]`（mask 为空时省略）。"""

    prompt = _require(deps, V.IMAGE_PROMPT, "Editing instructions")
    path = _require(deps, V.IMAGE_PATH, "File path")
    verb = IMAGE_EDIT_BYTES if in_memory else IMAGE_EDIT
    frame = [verb, deps.credential(), prompt, path, *_image_options(deps)]
    mask = _text(deps, V.IMAGE_MASK_PATH)
    if mask:
        frame.append(mask)
    reply = deps.client.call(frame)
    _apply_reply(deps, context, reply, joined=True, default_error="Image editing failed.")
    return reply


def build_context_table(deps: ContextDeps) -> Dict[str, Handler]:
    """构造 context 名 -> handler 的静态表。"""

    return {
        "whisper": lambda f: _whisper(deps, f[0], TRANSCRIBE),
        "whisper.transcribe": lambda f: _whisper(deps, f[0], TRANSCRIBE),
        "whisper.translate": lambda f: _whisper(deps, f[0], TRANSLATE),
        "dalle": lambda f: _dalle_generation(deps, f[0]),
        "dalle.generation": lambda f: _dalle_generation(deps, f[0]),
        "dalle.editing": lambda f: _dalle_editing(deps, f[0], in_memory=False),
        "dalle.editing.bytes": lambda f: _dalle_editing(deps, f[0], in_memory=True),
        "dalle.variation": lambda f: _dalle_variation(deps, f[0], in_memory=False),
        "dalle.variation.bytes": lambda f: _dalle_variation(deps, f[0], in_memory=True),
    }


def build_context_dispatcher(deps: ContextDeps) -> FrameDispatcher:
    """host 侧派发器（frame 为 `[context]`）。"""

    return FrameDispatcher(build_context_table(deps))


CONTEXTS: List[str] = [
    "whisper",
    "whisper.transcribe",
    "whisper.translate",
    "dalle",
    "dalle.generation",
    "dalle.editing",
    "dalle.editing.bytes",
    "dalle.variation",
    "dalle.variation.bytes",
]

