"""
Provider adapter contract.

Every adapter exposes one operation, `call(**inputs) -> ProviderResult`.
The whole call is bounded by `asyncio.wait_for`; a timeout, an HTTP error,
a malformed response or any other failure surfaces as ProviderError so the
executor can treat them all the same way.
"""

import os
import time
import base64
import random
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx

from ... import metrics
from ..errors import ProviderError

logger = logging.getLogger(__name__)

POLL_INTERVAL = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 5
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8, 16, 32
JITTER_MAX = 1.0       # random jitter 0-1s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


def _backoff_delay(attempt: int) -> float:
    return BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)


@dataclass(frozen=True)
class ProviderResult:
    artifact: str
    cost: float
    provider: str


class ProviderAdapter(ABC):
    """Base for all adapters. Subclasses set `name`, `cost`, `timeout` and implement `_call`."""

    name: str = "provider"
    cost: float = 0.0
    timeout: float = 60.0

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        poll_interval: Optional[float] = None,
    ):
        if timeout is not None:
            self.timeout = timeout
        self.poll_interval = POLL_INTERVAL if poll_interval is None else poll_interval
        self._transport = transport

    def _client(self, timeout: float = 60) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, follow_redirects=True)

    async def _request_with_backoff(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        raise_for_status: bool = True,
        **kwargs,
    ) -> httpx.Response:
        """
        Make an HTTP request, retrying 429 / 502 / 503 / 504 and transport
        errors with exponential backoff (honours Retry-After).

        The retries stay inside the adapter's overall `timeout`.
        """
        for attempt in range(MAX_RETRIES + 1):
            last_attempt = attempt == MAX_RETRIES
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if last_attempt:
                    raise
                delay = _backoff_delay(attempt)
                logger.warning(
                    f"{self.name} request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e!r}, "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code not in RETRYABLE_STATUS_CODES or last_attempt:
                if raise_for_status:
                    response.raise_for_status()
                return response

            retry_after = response.headers.get("Retry-After", "")
            delay = int(retry_after) if retry_after.isdigit() else _backoff_delay(attempt)
            logger.warning(
                f"{self.name} got {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1}, "
                f"retrying in {delay:.1f}s (url={url})"
            )
            await asyncio.sleep(delay)

    @abstractmethod
    async def _call(self, **inputs) -> str:
        """Produce the artifact (text or URL)."""

    async def call(self, **inputs) -> ProviderResult:
        started = time.monotonic()
        try:
            artifact = await asyncio.wait_for(self._call(**inputs), timeout=self.timeout)
        except asyncio.TimeoutError:
            metrics.inc_counter(f"providers.{self.name}.error")
            raise ProviderError(self.name, f"timed out after {self.timeout:g}s")
        except ProviderError:
            metrics.inc_counter(f"providers.{self.name}.error")
            raise
        except Exception as e:
            metrics.inc_counter(f"providers.{self.name}.error")
            raise ProviderError(self.name, str(e) or e.__class__.__name__) from e

        if not artifact or not str(artifact).strip():
            metrics.inc_counter(f"providers.{self.name}.error")
            raise ProviderError(self.name, "provider returned an empty result")

        metrics.inc_counter(f"providers.{self.name}.ok")
        metrics.record_latency(f"providers.{self.name}", (time.monotonic() - started) * 1000)
        return ProviderResult(artifact=str(artifact).strip(), cost=self.cost, provider=self.name)


class OrderedFallback:
    """
    Try adapters in order until one succeeds.

    Used for video generation (primary, then fallback); adding another
    provider only means appending it to the list.
    """

    def __init__(self, name: str, adapters: Sequence[ProviderAdapter]):
        if not adapters:
            raise ValueError("OrderedFallback needs at least one adapter")
        self.name = name
        self.adapters = list(adapters)

    async def call(self, **inputs) -> ProviderResult:
        failures = []
        for i, adapter in enumerate(self.adapters):
            try:
                return await adapter.call(**inputs)
            except ProviderError as e:
                failures.append(str(e))
                if i + 1 < len(self.adapters):
                    logger.warning(
                        f"{self.name}: {adapter.name} failed ({e.message}), "
                        f"falling back to {self.adapters[i + 1].name}"
                    )
        raise ProviderError(self.name, "all providers failed: " + "; ".join(failures))


# ── Shared helpers ───────────────────────────────────────────────────────────

def guess_mime(url: str) -> str:
    lower = url.lower()
    if ".png" in lower:
        return "image/png"
    if ".webp" in lower:
        return "image/webp"
    return "image/jpeg"


async def download_inline_image(client: httpx.AsyncClient, url: str) -> dict:
    """Download an image and return it as a Gemini `inlineData` part."""
    resp = await client.get(url)
    resp.raise_for_status()
    mime = resp.headers.get("content-type", "").split(";")[0] or guess_mime(url)
    if not mime.startswith("image/"):
        mime = guess_mime(url)
    return {
        "inlineData": {
            "mimeType": mime,
            "data": base64.b64encode(resp.content).decode("utf-8"),
        }
    }
