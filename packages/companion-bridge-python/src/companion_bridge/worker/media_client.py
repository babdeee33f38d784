"""
托管媒体 API client（OpenAI-compatible audio/images，httpx 同步）。

说明：
- 只覆盖 worker verbs 需要的 5 个端点；不做重试。
- 文件在发请求之前打开：文件缺失时直接失败，不产生网络流量。
- 非 2xx 响应抛 ProviderError，消息优先取 OpenAI 风格 `{"error": {"message": ...}}`。
"""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Tuple, Union

import httpx

from companion_bridge.config.loader import BridgeProviderConfig
from companion_bridge.core.errors import ProviderError
from companion_bridge.worker.credentials import Credential

logger = logging.getLogger(__name__)

FilePart = Tuple[str, Union[bytes, BinaryIO], str]


def _provider_message(resp: httpx.Response) -> str:
    """从错误响应里提取可读消息。"""

    try:
        obj = resp.json()
    except ValueError:
        obj = None
    if isinstance(obj, dict):
        err = obj.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    text = resp.text.strip()
    return text[:500] if text else f"HTTP {resp.status_code}"


def _image_part(path: str, *, in_memory: bool, stack: contextlib.ExitStack) -> FilePart:
    """
    打开图片文件并构造 multipart 片段。

    参数：
    - path：图片路径
    - in_memory：True 时整体读入内存（`.bytes` 变体）；否则以文件句柄流式上传
    - stack：负责关闭文件句柄
    """

    p = Path(path)
    if in_memory:
        return (p.name, p.read_bytes(), "image/png")
    fh = stack.enter_context(p.open("rb"))
    return (p.name, fh, "image/png")


class OpenAIMediaClient:
    """OpenAI-compatible audio/images client。"""

    def __init__(
        self,
        cfg: BridgeProviderConfig,
        credential: Credential,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """
        参数：
        - cfg：provider 配置（base_url/timeout/model）
        - credential：frame 内嵌的凭据
        - transport：可选 httpx transport（测试注入 MockTransport）
        """

        self._cfg = cfg
        headers = {"Authorization": f"Bearer {credential.api_key}"}
        if credential.organization:
            headers["OpenAI-Organization"] = credential.organization
        self._client = httpx.Client(
            base_url=cfg.base_url.rstrip("/") + "/",
            headers=headers,
            timeout=httpx.Timeout(cfg.timeout_sec),
            transport=transport,
        )

    def close(self) -> None:
        """关闭底层 httpx client。"""

        self._client.close()

    def __enter__(self) -> "OpenAIMediaClient":
        """返回自身。"""

        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        """关闭 client。"""

        self.close()

    def _post(self, endpoint: str, *, data: Dict[str, Any], files: Optional[Dict[str, FilePart]] = None) -> Dict[str, Any]:
        """
        发送 POST 并解析 JSON。

        异常：
        - ProviderError：非 2xx / 非 JSON / 网络错误
        """

        try:
            if files:
                resp = self._client.post(endpoint, data=data, files=files)
            else:
                resp = self._client.post(endpoint, json=data)
        except httpx.HTTPError as exc:
            raise ProviderError(f"request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ProviderError(_provider_message(resp), status_code=resp.status_code)
        try:
            obj = resp.json()
        except ValueError as exc:
            raise ProviderError("invalid JSON response", status_code=resp.status_code) from exc
        if not isinstance(obj, dict):
            raise ProviderError("invalid response shape", status_code=resp.status_code)
        return obj

    def _audio(self, endpoint: str, audio_path: str) -> str:
        """上传音频并返回 `text` 字段。"""

        p = Path(audio_path)
        with p.open("rb") as fh:
            obj = self._post(
                endpoint,
                data={"model": self._cfg.transcription_model},
                files={"file": (p.name, fh, "application/octet-stream")},
            )
        return str(obj.get("text") or "")

    def transcribe(self, audio_path: str) -> str:
        """`/audio/transcriptions`。"""

        return self._audio("audio/transcriptions", audio_path)

    def translate(self, audio_path: str) -> str:
        """`/audio/translations`（翻译为英文）。"""

        return self._audio("audio/translations", audio_path)

    @staticmethod
    def _urls(obj: Dict[str, Any]) -> List[str]:
        """从 images 响应中提取 URL 列表。"""

        data = obj.get("data")
        if not isinstance(data, list):
            raise ProviderError("response has no image data")
        urls = [str(item.get("url")) for item in data if isinstance(item, dict) and item.get("url")]
        if not urls:
            raise ProviderError("response has no image URLs")
        return urls

    def generate_images(self, prompt: str, *, n: int, size: str) -> List[str]:
        """`/images/generations`。"""

        obj = self._post("images/generations", data={"prompt": prompt, "n": n, "size": size})
        return self._urls(obj)

    def create_variations(self, image_path: str, *, n: int, size: str, in_memory: bool = False) -> List[str]:
        """`/images/variations`。"""

        with contextlib.ExitStack() as stack:
            files = {"image": _image_part(image_path, in_memory=in_memory, stack=stack)}
            obj = self._post("images/variations", data={"n": str(n), "size": size}, files=files)
        return self._urls(obj)

    def edit_images(
        self,
        prompt: str,
        image_path: str,
        *,
        n: int,
        size: str,
        mask_path: Optional[str] = None,
        in_memory: bool = False,
    ) -> List[str]:
        """`/images/edits`（mask 可选）。"""

        with contextlib.ExitStack() as stack:
            files = {"image": _image_part(image_path, in_memory=in_memory, stack=stack)}
            if mask_path:
                files["mask"] = _image_part(mask_path, in_memory=in_memory, stack=stack)
            obj = self._post("images/edits", data={"prompt": prompt, "n": str(n), "size": size}, files=files)
        return self._urls(obj)
