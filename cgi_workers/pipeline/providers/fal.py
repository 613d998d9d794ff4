"""
fal.ai adapters via the queue REST API (submit → poll → result).

  - FalImageGenerator: FLUX Kontext edits the scene image so it contains
    the product described by the enhanced description.
  - FalKlingVideoGenerator: Kling image-to-video, the fallback video provider.

fal.ai queue protocol:
  POST {base}/{endpoint}                   → { request_id, status_url, response_url }
  GET  status_url                          → { status: IN_QUEUE|IN_PROGRESS|COMPLETED }
  GET  response_url                        → result payload
"""

import os
import asyncio
import logging
from typing import Optional

import httpx

from .base import ProviderAdapter

logger = logging.getLogger(__name__)

FAL_API_KEY = os.environ.get("FAL_API_KEY", "")
FAL_API_BASE = "https://queue.fal.run"

IMAGE_ENDPOINT = "fal-ai/flux-pro/kontext"
KLING_ENDPOINT = "fal-ai/kling-video/v2.1/standard/image-to-video"

IMAGE_TIMEOUT = float(os.getenv("IMAGE_TIMEOUT_SECONDS", "180"))
VIDEO_TIMEOUT = float(os.getenv("VIDEO_TIMEOUT_SECONDS", "900"))

FAILED_STATUSES = {"FAILED", "ERROR", "CANCELLED"}


class FalQueueAdapter(ProviderAdapter):
    """Shared fal.ai queue handling; the whole submit/poll loop is bounded by `timeout`."""

    endpoint: str = ""

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = FAL_API_KEY if api_key is None else api_key

    def _headers(self) -> dict:
        if not self.api_key:
            raise RuntimeError("FAL_API_KEY not set")
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _submit_and_poll(self, client: httpx.AsyncClient, input_data: dict) -> dict:
        headers = self._headers()

        logger.info(f"[fal] Submitting to {self.endpoint}...")
        resp = await self._request_with_backoff(
            client, "POST", f"{FAL_API_BASE}/{self.endpoint}", json=input_data, headers=headers,
        )
        submit_data = resp.json()

        request_id = submit_data.get("request_id")
        if not request_id:
            # Synchronous response
            return submit_data

        base = f"{FAL_API_BASE}/{self.endpoint}/requests/{request_id}"
        status_url = submit_data.get("status_url") or f"{base}/status"
        response_url = submit_data.get("response_url") or base

        poll = 0
        while True:
            await asyncio.sleep(self.poll_interval)
            poll += 1
            status_resp = await self._request_with_backoff(client, "GET", status_url, headers=headers)
            status = status_resp.json().get("status", "")
            logger.debug(f"[fal] {self.endpoint} poll #{poll}: {status}")

            if status == "COMPLETED":
                break
            if status in FAILED_STATUSES:
                raise RuntimeError(f"fal.ai request {request_id} {status.lower()}")

        result_resp = await self._request_with_backoff(client, "GET", response_url, headers=headers)
        return result_resp.json()


class FalImageGenerator(FalQueueAdapter):
    name = "fal_flux_kontext"
    endpoint = IMAGE_ENDPOINT
    cost = 0.04
    timeout = IMAGE_TIMEOUT

    async def _call(self, description: str, scene_image_url: str) -> str:
        async with self._client() as client:
            result = await self._submit_and_poll(client, {
                "prompt": description,
                "image_url": scene_image_url,
                "output_format": "jpeg",
                "num_images": 1,
            })

        images = result.get("images") or []
        image_url = images[0].get("url") if images and isinstance(images[0], dict) else None
        if not image_url:
            raise RuntimeError(f"fal.ai returned no image: {str(result)[:200]}")

        logger.info(f"CGI image generated: {image_url}")
        return image_url


class FalKlingVideoGenerator(FalQueueAdapter):
    name = "fal_kling"
    endpoint = KLING_ENDPOINT
    cost = 0.28
    timeout = VIDEO_TIMEOUT

    async def _call(self, image_url: str, prompt: str) -> str:
        async with self._client() as client:
            result = await self._submit_and_poll(client, {
                "prompt": prompt,
                "image_url": image_url,
                "duration": "5",
                "aspect_ratio": "16:9",
            })

        video = result.get("video") or {}
        video_url = video.get("url") if isinstance(video, dict) else None
        if not video_url:
            raise RuntimeError(f"fal.ai Kling returned no video: {str(result)[:200]}")

        logger.info(f"Kling video generated: {video_url}")
        return video_url
