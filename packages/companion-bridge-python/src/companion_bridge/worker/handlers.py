"""
Worker verb handlers（audio 转写/翻译 + 图片生成/变体/编辑）。

约定：
- frame[0] 是 verb，frame[1] 是凭据 `key[:org]`，其余为位置参数。
- 元素个数不满足时返回 None（拒绝，派发层不回复）。
- 失败统一包装为带前缀的 OperationError，由派发层转换为 sentinel。
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from companion_bridge.config.loader import BridgeProviderConfig
from companion_bridge.core.errors import OperationError
from companion_bridge.dispatch.dispatcher import Handler
from companion_bridge.protocol.frame import Frame
from companion_bridge.protocol.sentinel import SUCCESS_TAG
from companion_bridge.worker.credentials import Credential, parse_credential
from companion_bridge.worker.media_client import OpenAIMediaClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Credential], OpenAIMediaClient]

TRANSCRIBE = "transcribe"
TRANSLATE = "translate"
IMAGE_GENERATE = "image.generate"
IMAGE_VARIATION = "image.variation"
IMAGE_VARIATION_BYTES = "image.variation.bytes"
IMAGE_EDIT = "image.edit"
IMAGE_EDIT_BYTES = "image.edit.bytes"


def _arg(frame: Frame, index: int) -> str:
    """取位置参数；缺失时返回空串。"""

    return frame[index] if len(frame) > index else ""


def _single_line(text: str) -> str:
    """把多行文本压成一行（回复 frame 的元素不能含换行）。"""

    return " ".join(str(text).split())


class MediaHandlers:
    """
    绑定 provider 配置的 handler 集合。

    说明：
    - 每次调用按 frame 内嵌凭据新建 client，调用结束即关闭。
    """

    def __init__(self, cfg: BridgeProviderConfig, *, client_factory: Optional[ClientFactory] = None) -> None:
        """
        参数：
        - cfg：provider 配置
        - client_factory：凭据 -> client（测试注入 MockTransport）
        """

        self._cfg = cfg
        self._client_factory = client_factory or (lambda cred: OpenAIMediaClient(cfg, cred))

    def _count(self, raw: str) -> int:
        """解析图片数量：无法解析时为 1，并夹到 1..max_image_count。"""

        try:
            n = int(raw.strip()) if raw.strip() else 1
        except ValueError:
            n = 1
        return max(1, min(n, int(self._cfg.max_image_count)))

    def _size(self, raw: str) -> str:
        """解析图片尺寸：为空时用默认值；不在允许列表中则失败。"""

        size = raw.strip() or self._cfg.default_image_size
        if size not in self._cfg.image_sizes:
            raise OperationError(f"Image size invalid: {size}")
        return size

    def transcribe(self, frame: Frame) -> Optional[Frame]:
        """`[transcribe, cred, audio_path]` -> `[text]`。"""

        if len(frame) != 3:
            return None
        try:
            cred = parse_credential(frame[1])
            with self._client_factory(cred) as client:
                text = client.transcribe(frame[2])
            if not text.strip():
                raise OperationError("Transcription Error - results text is null or empty!")
        except Exception as exc:
            raise OperationError(f"Whisper Transcription Error: {exc}") from exc
        return [_single_line(text)]

    def translate(self, frame: Frame) -> Optional[Frame]:
        """`[translate, cred, audio_path]` -> `[text, "success"]`。"""

        if len(frame) != 3:
            return None
        try:
            cred = parse_credential(frame[1])
            with self._client_factory(cred) as client:
                text = client.translate(frame[2])
            if not text.strip():
                raise OperationError("Translation Error - results text is null or empty!")
        except Exception as exc:
            raise OperationError(f"Whisper Translation Error: {exc}") from exc
        return [_single_line(text), SUCCESS_TAG]

    def image_generate(self, frame: Frame) -> Optional[Frame]:
        """`[image.generate, cred, prompt, count?, size?]` -> URL 列表。"""

        if len(frame) < 3:
            return None
        try:
            prompt = _arg(frame, 2)
            if not prompt.strip():
                raise OperationError("Image User Prompt is null or empty!")
            n = self._count(_arg(frame, 3))
            size = self._size(_arg(frame, 4))
            cred = parse_credential(frame[1])
            with self._client_factory(cred) as client:
                urls = client.generate_images(prompt, n=n, size=size)
        except Exception as exc:
            raise OperationError(f"Image Error: {exc}") from exc
        return list(urls)

    def _variation(self, frame: Frame, *, in_memory: bool) -> Optional[Frame]:
        """`[image.variation*, cred, image_path, count?, size?]` -> URL 列表。"""

        if len(frame) < 3:
            return None
        try:
            path = _arg(frame, 2).strip()
            if not path:
                raise OperationError("File Path to Image is null or empty!")
            n = self._count(_arg(frame, 3))
            size = self._size(_arg(frame, 4))
            cred = parse_credential(frame[1])
            with self._client_factory(cred) as client:
                urls = client.create_variations(path, n=n, size=size, in_memory=in_memory)
        except Exception as exc:
            raise OperationError(f"Image Error: {exc}") from exc
        return list(urls)

    def _edit(self, frame: Frame, *, in_memory: bool) -> Optional[Frame]:
        """`[image.edit*, cred, prompt, image_path, count?, size?, mask_path?]` -> URL 列表。"""

        if len(frame) < 4:
            return None
        try:
            prompt = _arg(frame, 2)
            path = _arg(frame, 3).strip()
            if not prompt.strip():
                raise OperationError("Image User Prompt is null or empty!")
            if not path:
                raise OperationError("File Path to Image is null or empty!")
            n = self._count(_arg(frame, 4))
            size = self._size(_arg(frame, 5))
            mask = _arg(frame, 6).strip() or None
            cred = parse_credential(frame[1])
            with self._client_factory(cred) as client:
                urls = client.edit_images(prompt, path, n=n, size=size, mask_path=mask, in_memory=in_memory)
        except Exception as exc:
            raise OperationError(f"Image Error: {exc}") from exc
        return list(urls)

    def table(self) -> Dict[str, Handler]:
        """返回 verb -> handler 派发表。"""

        return {
            TRANSCRIBE: self.transcribe,
            TRANSLATE: self.translate,
            IMAGE_GENERATE: self.image_generate,
            IMAGE_VARIATION: lambda f: self._variation(f, in_memory=False),
            IMAGE_VARIATION_BYTES: lambda f: self._variation(f, in_memory=True),
            IMAGE_EDIT: lambda f: self._edit(f, in_memory=False),
            IMAGE_EDIT_BYTES: lambda f: self._edit(f, in_memory=True),
        }


def build_handler_table(cfg: BridgeProviderConfig, *, client_factory: Optional[ClientFactory] = None) -> Dict[str, Handler]:
    """构造 worker 默认派发表。"""

    return MediaHandlers(cfg, client_factory=client_factory).table()


VERBS: List[str] = [
    TRANSCRIBE,
    TRANSLATE,
    IMAGE_GENERATE,
    IMAGE_VARIATION,
    IMAGE_VARIATION_BYTES,
    IMAGE_EDIT,
    IMAGE_EDIT_BYTES,
]
