"""
AI image provider collaborators.

The edit lifecycle only sees the normalized result types defined here;
vendor response shapes are parsed inside each provider.
"""

from __future__ import annotations

import abc
import base64
import binascii
from dataclasses import dataclass
import logging
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from openai import AsyncOpenAI, OpenAIError

from config import ai_provider_configured, settings
from services.errors import ProviderUnavailableError
from services.prompts import build_prompt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnhancedImage:
    image_bytes: bytes
    mime_type: str = "image/png"


@dataclass(frozen=True)
class TextOnly:
    text: str = ""


ProviderResult = Union[EnhancedImage, TextOnly]


@dataclass(frozen=True)
class ReferenceImage:
    image_bytes: bytes
    mime_type: str


class AiProvider(abc.ABC):
    """Image-generation backend used to perform photo operations."""

    name = "abstract"
    model = ""

    @property
    def configured(self) -> bool:
        return True

    @abc.abstractmethod
    async def enhance(
        self,
        image_bytes: bytes,
        mime_type: str,
        operation_type: str,
        parameters: Dict[str, Any],
        reference_image: Optional[ReferenceImage] = None,
    ) -> ProviderResult:
        """Run one operation; raise ProviderUnavailableError on failure."""


def _data_url(image_bytes: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('utf-8')}"


def decode_data_url(url: str) -> Optional[Tuple[bytes, str]]:
    """Decode a ``data:<mime>;base64,<payload>`` URL."""
    if not isinstance(url, str) or not url.startswith("data:") or "," not in url:
        return None
    header, payload = url.split(",", 1)
    mime_type = header[len("data:"):].split(";", 1)[0] or "image/png"
    try:
        return base64.b64decode(payload, validate=False), mime_type
    except (binascii.Error, ValueError):
        return None


def _image_from_part(part: Any) -> Optional[Tuple[bytes, str]]:
    if not isinstance(part, dict):
        return None
    image_url = part.get("image_url")
    if isinstance(image_url, dict):
        decoded = decode_data_url(image_url.get("url", ""))
        if decoded:
            return decoded
    elif isinstance(image_url, str):
        decoded = decode_data_url(image_url)
        if decoded:
            return decoded
    b64_json = part.get("b64_json")
    if isinstance(b64_json, str) and b64_json:
        try:
            return base64.b64decode(b64_json), "image/png"
        except (binascii.Error, ValueError):
            return None
    return None


def _first_image(parts: Iterable[Any]) -> Optional[Tuple[bytes, str]]:
    for part in parts:
        decoded = _image_from_part(part)
        if decoded:
            return decoded
    return None


def parse_chat_message(message: Dict[str, Any]) -> ProviderResult:
    """Normalize an OpenAI-compatible chat message into a provider result."""
    images = message.get("images") or []
    decoded = _first_image(images)
    if decoded:
        return EnhancedImage(image_bytes=decoded[0], mime_type=decoded[1])

    content = message.get("content")
    text_parts = []
    if isinstance(content, list):
        decoded = _first_image(content)
        if decoded:
            return EnhancedImage(image_bytes=decoded[0], mime_type=decoded[1])
        text_parts = [part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"]
    elif isinstance(content, str):
        decoded = decode_data_url(content.strip())
        if decoded:
            return EnhancedImage(image_bytes=decoded[0], mime_type=decoded[1])
        text_parts = [content]

    return TextOnly(text="\n".join(part for part in text_parts if part).strip())


class OpenRouterProvider(AiProvider):
    """Gemini image models through OpenRouter's OpenAI-compatible API."""

    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model or settings.OPENROUTER_MODEL
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or settings.OPENROUTER_BASE_URL,
            default_headers={
                "HTTP-Referer": settings.OPENROUTER_APP_URL,
                "X-Title": settings.OPENROUTER_APP_TITLE,
            },
            max_retries=0,
        )

    async def enhance(
        self,
        image_bytes: bytes,
        mime_type: str,
        operation_type: str,
        parameters: Dict[str, Any],
        reference_image: Optional[ReferenceImage] = None,
    ) -> ProviderResult:
        content = [
            {"type": "text", "text": build_prompt(operation_type, parameters)},
            {"type": "image_url", "image_url": {"url": _data_url(image_bytes, mime_type)}},
        ]
        if reference_image is not None:
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": _data_url(reference_image.image_bytes, reference_image.mime_type)},
                }
            )

        logger.info("[OPENROUTER] Running %s with model %s", operation_type, self.model)
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": content}],
                max_tokens=4096,
                extra_body={"modalities": ["image", "text"]},
            )
        except OpenAIError as exc:
            logger.error("OpenRouter API error: %s", exc)
            raise ProviderUnavailableError(f"OpenRouter API error: {exc}") from exc

        if not response.choices:
            raise ProviderUnavailableError("OpenRouter returned no choices.")
        message = response.choices[0].message
        return parse_chat_message(message.model_dump())


class PassthroughProvider(AiProvider):
    """Local stand-in when no provider key is configured; never yields an image."""

    name = "passthrough"
    model = "none"

    @property
    def configured(self) -> bool:
        return False

    async def enhance(
        self,
        image_bytes: bytes,
        mime_type: str,
        operation_type: str,
        parameters: Dict[str, Any],
        reference_image: Optional[ReferenceImage] = None,
    ) -> ProviderResult:
        logger.warning("Using passthrough AI provider for %s; no image will be generated.", operation_type)
        return TextOnly(text="AI provider is not configured.")


def get_ai_provider() -> AiProvider:
    """FastAPI dependency building the configured provider for a request."""
    if ai_provider_configured():
        return OpenRouterProvider(api_key=settings.OPENROUTER_API_KEY.strip())
    return PassthroughProvider()
