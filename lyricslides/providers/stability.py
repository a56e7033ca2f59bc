"""
Stability AI REST v1 adapter (text-to-image).

Size Mapping:
    SDXL engines (stable-diffusion-xl-*) only accept a fixed set of
    dimensions; orientation picks one:
        square    -> 1024x1024
        landscape -> 1344x768
        portrait  -> 768x1344
    Other engines take the requested width/height rounded to multiples
    of 64 within [320, 1536].

The negative prompt is sent as a second text prompt with weight -1.
"""

import base64
import binascii
from typing import Any

from lyricslides.core.exceptions import ErrorKind, ProviderError
from lyricslides.providers.base import ImageProvider, ProviderRequest, orientation_of


SDXL_SIZES = {
    "square": (1024, 1024),
    "landscape": (1344, 768),
    "portrait": (768, 1344),
}

# Fallback dimensions for non-SDXL engines when the request has none
DEFAULT_DIMENSIONS = {
    "square": (512, 512),
    "landscape": (1024, 576),
    "portrait": (576, 1024),
}

MIN_DIMENSION = 320
MAX_DIMENSION = 1536

CFG_SCALE = 7
STEPS = 30

STYLE_PRESETS = frozenset({
    "3d-model", "analog-film", "anime", "cinematic", "comic-book", "digital-art",
    "enhance", "fantasy-art", "isometric", "line-art", "low-poly", "modeling-compound",
    "neon-punk", "origami", "photographic", "pixel-art", "tile-texture",
})


def round_dimension(value: int) -> int:
    """Round to the nearest multiple of 64 inside the accepted range."""
    rounded = int(round(value / 64.0)) * 64
    return max(MIN_DIMENSION, min(MAX_DIMENSION, rounded))


class StabilityProvider(ImageProvider):
    """Adapter for https://api.stability.ai/v1/generation/{engine}/text-to-image."""

    name = "stabilityai"
    aliases = ("stability",)
    models = ("stable-diffusion-xl-1024-v1-0", "stable-diffusion-v1-6")
    default_model = "stable-diffusion-xl-1024-v1-0"
    api_base = "https://api.stability.ai/v1"

    def resolve_size(self, request: ProviderRequest) -> tuple[int, int]:
        orientation = orientation_of(request)
        if request.model.startswith("stable-diffusion-xl"):
            return SDXL_SIZES.get(orientation, SDXL_SIZES["square"])

        if request.width and request.height:
            return round_dimension(request.width), round_dimension(request.height)
        return DEFAULT_DIMENSIONS.get(orientation, DEFAULT_DIMENSIONS["square"])

    def cache_options(self, request: ProviderRequest) -> tuple[str | None, str | None]:
        style = request.style if request.style in STYLE_PRESETS else None
        return None, style

    def build_payload(self, request: ProviderRequest, width: int, height: int) -> tuple[str, dict[str, Any]]:
        text_prompts = [{"text": request.prompt, "weight": 1}]
        if request.negative_prompt:
            text_prompts.append({"text": request.negative_prompt, "weight": -1})

        payload: dict[str, Any] = {
            "text_prompts": text_prompts,
            "cfg_scale": CFG_SCALE,
            "height": height,
            "width": width,
            "samples": 1,
            "steps": STEPS,
        }
        _, style = self.cache_options(request)
        if style:
            payload["style_preset"] = style

        return f"{self.api_base}/generation/{request.model}/text-to-image", payload

    def parse_response(self, data: dict[str, Any]) -> tuple[bytes, dict[str, Any]]:
        try:
            artifact = data["artifacts"][0]
            encoded = artifact["base64"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                "stabilityai response did not contain image data",
                ErrorKind.INVALID_RESPONSE,
                details={"original_error": repr(e)},
            ) from e

        if artifact.get("finishReason") == "CONTENT_FILTERED":
            raise ProviderError(
                "stabilityai filtered the generated image",
                ErrorKind.INVALID_RESPONSE,
                details={"finish_reason": "CONTENT_FILTERED"},
            )

        try:
            image_bytes = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise ProviderError(
                "stabilityai returned malformed base64 image data",
                ErrorKind.INVALID_RESPONSE,
            ) from e

        metadata: dict[str, Any] = {}
        if artifact.get("seed") is not None:
            metadata["seed"] = artifact["seed"]
        if artifact.get("finishReason"):
            metadata["finish_reason"] = artifact["finishReason"]
        return image_bytes, metadata

    def key_check_url(self) -> str:
        return f"{self.api_base}/engines/list"
