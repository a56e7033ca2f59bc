"""
OpenAI Images API adapter (DALL·E 2 / DALL·E 3).

Size Mapping:
    dall-e-3   square     -> 1024x1024
               landscape  -> 1792x1024
               portrait   -> 1024x1792
    dall-e-2   always 1024x1024

The image is requested as base64 (response_format=b64_json) so no second
download is needed. quality and style are only sent to dall-e-3.
"""

import base64
import binascii
from typing import Any

from lyricslides.core.exceptions import ErrorKind, ProviderError
from lyricslides.providers.base import ImageProvider, ProviderRequest, orientation_of


DALLE3_SIZES = {
    "square": (1024, 1024),
    "landscape": (1792, 1024),
    "portrait": (1024, 1792),
}
DALLE2_SIZE = (1024, 1024)

VALID_QUALITIES = ("standard", "hd")
VALID_STYLES = ("natural", "vivid")


class OpenAIProvider(ImageProvider):
    """Adapter for https://api.openai.com/v1/images/generations."""

    name = "openai"
    models = ("dall-e-3", "dall-e-2")
    default_model = "dall-e-3"
    api_base = "https://api.openai.com/v1"

    def _is_dalle3(self, model: str) -> bool:
        return model != "dall-e-2"

    def resolve_size(self, request: ProviderRequest) -> tuple[int, int]:
        if not self._is_dalle3(request.model):
            return DALLE2_SIZE
        return DALLE3_SIZES.get(orientation_of(request), DALLE3_SIZES["square"])

    def cache_options(self, request: ProviderRequest) -> tuple[str | None, str | None]:
        if not self._is_dalle3(request.model):
            return None, None
        quality = request.quality if request.quality in VALID_QUALITIES else None
        style = request.style if request.style in VALID_STYLES else None
        return quality, style

    def build_payload(self, request: ProviderRequest, width: int, height: int) -> tuple[str, dict[str, Any]]:
        payload: dict[str, Any] = {
            "model": request.model,
            "prompt": request.prompt,
            "n": 1,
            "size": f"{width}x{height}",
            "response_format": "b64_json",
        }
        quality, style = self.cache_options(request)
        if quality:
            payload["quality"] = quality
        if style:
            payload["style"] = style
        return f"{self.api_base}/images/generations", payload

    def parse_response(self, data: dict[str, Any]) -> tuple[bytes, dict[str, Any]]:
        try:
            item = data["data"][0]
            encoded = item["b64_json"]
            image_bytes = base64.b64decode(encoded, validate=True)
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                "openai response did not contain image data",
                ErrorKind.INVALID_RESPONSE,
                details={"original_error": repr(e)},
            ) from e
        except (binascii.Error, ValueError) as e:
            raise ProviderError(
                "openai returned malformed base64 image data",
                ErrorKind.INVALID_RESPONSE,
            ) from e

        metadata: dict[str, Any] = {}
        if item.get("revised_prompt"):
            metadata["revised_prompt"] = item["revised_prompt"]
        if data.get("created"):
            metadata["created"] = data["created"]
        return image_bytes, metadata

    def key_check_url(self) -> str:
        return f"{self.api_base}/models"
