"""
Primary video provider — Veo 3.1 Fast via Kie.ai.

Submits an image-to-video task to `veo/generate`, then polls
`veo/record-info` until the task succeeds or fails.
"""

import os
import asyncio
import logging
from typing import Optional

from .base import ProviderAdapter

logger = logging.getLogger(__name__)

KIE_API_KEY = os.getenv("KIE_API_KEY", "")
KIE_API_BASE = "https://api.kie.ai/api/v1"

VIDEO_TIMEOUT = float(os.getenv("VIDEO_TIMEOUT_SECONDS", "900"))

SUCCESS_STATUSES = {"SUCCESS", "success", "completed"}
FAILED_STATUSES = {"FAILED", "failed", "error", "CREATE_TASK_FAILED", "GENERATE_FAILED"}


def _extract_video_url(record: dict) -> Optional[str]:
    url = record.get("video_url") or record.get("videoUrl") or record.get("resultUrl")
    if url:
        return url

    response = record.get("response") or {}
    result_urls = response.get("resultUrls") if isinstance(response, dict) else None
    if result_urls:
        return result_urls[0]

    works = record.get("works", [])
    if works and isinstance(works, list):
        return works[0].get("resource", {}).get("resource")
    return None


class KieVeoVideoGenerator(ProviderAdapter):
    name = "kie_veo"
    cost = 0.40
    timeout = VIDEO_TIMEOUT

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = KIE_API_KEY if api_key is None else api_key

    async def _call(self, image_url: str, prompt: str) -> str:
        if not self.api_key:
            raise RuntimeError("KIE_API_KEY not set")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "prompt": prompt,
            "model": "veo3_fast",
            "imageUrls": [image_url],
            "aspectRatio": "16:9",
        }

        async with self._client(timeout=30) as client:
            submit_resp = await self._request_with_backoff(
                client, "POST", f"{KIE_API_BASE}/veo/generate", headers=headers, json=payload,
            )
            submit_data = submit_resp.json()

            data = submit_data.get("data") or {}
            task_id = data.get("taskId") or data.get("task_id") or submit_data.get("task_id")
            if not task_id:
                raise RuntimeError(f"Kie.ai submit failed, no task id: {str(submit_data)[:200]}")

            logger.info(f"Veo task submitted: task_id={task_id}")

            attempt = 0
            while True:
                await asyncio.sleep(self.poll_interval)
                attempt += 1

                status_resp = await self._request_with_backoff(
                    client,
                    "GET",
                    f"{KIE_API_BASE}/veo/record-info",
                    headers=headers,
                    params={"taskId": task_id},
                )
                status_data = status_resp.json()

                record = status_data.get("data") or status_data
                status = record.get("status", "")
                flag = record.get("successFlag")
                logger.debug(f"Veo poll #{attempt}: status={status} successFlag={flag}")

                if status in SUCCESS_STATUSES or flag == 1:
                    video_url = _extract_video_url(record)
                    if not video_url:
                        raise RuntimeError(f"Veo completed but no video URL in response: {str(record)[:200]}")
                    logger.info(f"Veo video generated: {video_url}")
                    return video_url

                if status in FAILED_STATUSES or flag in (2, 3):
                    error_msg = record.get("errorMessage") or record.get("message") or "Unknown Veo error"
                    raise RuntimeError(f"Veo generation failed: {error_msg}")
