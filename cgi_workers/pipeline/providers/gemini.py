"""
Gemini text adapters (REST `generateContent`, vision input).

- GeminiDescriptionEnhancer: product + scene images + user intent
  → a detailed CGI composition description for the image model.
- GeminiVideoPromptWriter: generated image + user intent
  → a short camera/motion prompt for the video model.
"""

import os
import logging
from typing import Optional

import httpx

from .base import ProviderAdapter, download_inline_image

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_TEXT_MODEL = os.getenv("GEMINI_TEXT_MODEL", "gemini-2.0-flash")
TEXT_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "60"))


DESCRIPTION_PROMPT = """You are a senior CGI art director for product advertising.

The first image is the PRODUCT. The second image is the SCENE it must be placed into.

Write one detailed prompt for an image-generation model that composites the product
into the scene photorealistically. Cover:
- exact product placement, scale and orientation within the scene
- lighting direction, color temperature and shadows matching the scene
- materials, reflections and surface detail of the product
- camera angle, lens and depth of field

Client brief: {intent}

Return ONLY the prompt text, no preamble, no markdown. Maximum 120 words."""


VIDEO_PROMPT = """You are a motion director for short product advertisements.

The image is a finished CGI product shot. Write one prompt for an image-to-video model
that animates it into a 5-second clip. Describe camera movement, subtle motion in the
scene, and lighting changes. The product must stay intact and in focus.

Client brief: {intent}

Return ONLY the prompt text, no preamble, no markdown. Maximum 60 words."""


class GeminiTextAdapter(ProviderAdapter):
    """Shared request/response handling for Gemini text generation."""

    timeout = TEXT_TIMEOUT

    def __init__(self, api_key: Optional[str] = None, model: str = GEMINI_TEXT_MODEL, **kwargs):
        super().__init__(**kwargs)
        self.api_key = GEMINI_API_KEY if api_key is None else api_key
        self.model = model

    async def _generate_text(self, client: httpx.AsyncClient, parts: list) -> str:
        if not self.api_key:
            raise RuntimeError("GEMINI_API_KEY not set")

        resp = await self._request_with_backoff(
            client,
            "POST",
            f"{API_BASE}/models/{self.model}:generateContent",
            raise_for_status=False,
            params={"key": self.api_key},
            json={
                "contents": [{"parts": parts}],
                "generationConfig": {"temperature": 0.7},
            },
        )
        if resp.status_code != 200:
            raise RuntimeError(f"Gemini API error {resp.status_code}: {resp.text[:300]}")

        candidates = resp.json().get("candidates", [])
        if not candidates:
            raise RuntimeError("Gemini returned no candidates")

        texts = [
            part["text"]
            for part in candidates[0].get("content", {}).get("parts", [])
            if part.get("text")
        ]
        return "\n".join(texts).strip()


class GeminiDescriptionEnhancer(GeminiTextAdapter):
    name = "gemini_description"
    cost = 0.002

    async def _call(self, product_image_url: str, scene_image_url: str, description: str = "") -> str:
        async with self._client() as client:
            product_part = await download_inline_image(client, product_image_url)
            scene_part = await download_inline_image(client, scene_image_url)
            text = await self._generate_text(client, [
                product_part,
                {"text": "This is the product image."},
                scene_part,
                {"text": "This is the scene image."},
                {"text": DESCRIPTION_PROMPT.format(intent=description or "none given")},
            ])
        logger.info(f"Enhanced description ({len(text)} chars)")
        return text


class GeminiVideoPromptWriter(GeminiTextAdapter):
    name = "gemini_video_prompt"
    cost = 0.002

    async def _call(self, image_url: str, description: str = "") -> str:
        async with self._client() as client:
            image_part = await download_inline_image(client, image_url)
            text = await self._generate_text(client, [
                image_part,
                {"text": VIDEO_PROMPT.format(intent=description or "none given")},
            ])
        logger.info(f"Video prompt written ({len(text)} chars)")
        return text
