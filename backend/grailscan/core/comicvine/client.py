"""ComicVine API client with rate limiting, retry with backoff and a disk cache."""

from __future__ import annotations

import asyncio
import hashlib
import json
import random
import time
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import structlog

if TYPE_CHECKING:
    from grailscan.core.config import Settings

logger = structlog.get_logger("grailscan.comicvine.client")

USER_AGENT = "GrailScan/0.1"
RETRYABLE_STATUS_CODES = (420, 429)


class ComicVineError(Exception):
    """ComicVine answered 200 with a non-OK status_code in the body, or no API key is set."""


class ComicVineClient:
    """ComicVine API client.

    - Sliding-window rate limiting (``rate_limit`` requests per ``rate_limit_period``)
    - Exponential backoff with jitter on HTTP 420/429 and network errors
    - JSON responses cached on disk, keyed by endpoint and params
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://comicvine.gamespot.com/api",
        rate_limit: int = 40,
        rate_limit_period: int = 60,
        max_retries: int = 3,
        timeout: float = 15.0,
        cache_dir: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            api_key: ComicVine API key
            base_url: ComicVine API base URL
            rate_limit: Maximum requests per rate_limit_period
            rate_limit_period: Rate limit window in seconds
            max_retries: Retries on 420/429 and network errors
            timeout: Per-request timeout in seconds
            cache_dir: Directory for cached responses (None disables caching)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.rate_limit = rate_limit
        self.rate_limit_period = rate_limit_period
        self.max_retries = max_retries
        self.timeout = timeout
        self.cache_dir = cache_dir
        self._transport = transport

        self._request_times: deque[float] = deque()
        self._rate_limit_lock = asyncio.Lock()

        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _cache_path(self, endpoint: str, params: dict[str, Any]) -> Path | None:
        if self.cache_dir is None:
            return None
        key_data = f"{endpoint}:{json.dumps(sorted(params.items()), sort_keys=True)}"
        return self.cache_dir / f"{hashlib.sha256(key_data.encode()).hexdigest()}.json"

    def _load_from_cache(self, path: Path | None) -> dict[str, Any] | None:
        if path is None or not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to load cache", path=path.name, error=str(e))
            return None

    def _save_to_cache(self, path: Path | None, data: dict[str, Any]) -> None:
        if path is None:
            return
        try:
            with open(path, "w") as f:
                json.dump(data, f)
        except OSError as e:
            logger.warning("Failed to save cache", path=path.name, error=str(e))

    async def _wait_for_rate_limit(self) -> None:
        """Block until another request fits in the rate limit window."""
        async with self._rate_limit_lock:
            now = time.monotonic()
            while self._request_times and self._request_times[0] < now - self.rate_limit_period:
                self._request_times.popleft()

            if len(self._request_times) >= self.rate_limit:
                wait_time = self._request_times[0] + self.rate_limit_period - now + 0.1
                if wait_time > 0:
                    logger.debug(
                        "Rate limit reached, waiting",
                        wait_seconds=round(wait_time, 2),
                        current_count=len(self._request_times),
                    )
                    await asyncio.sleep(wait_time)
                    now = time.monotonic()
                    while (
                        self._request_times
                        and self._request_times[0] < now - self.rate_limit_period
                    ):
                        self._request_times.popleft()

            self._request_times.append(now)

    def _backoff_seconds(self, attempt: int) -> float:
        base_wait = 2**attempt
        return base_wait + random.uniform(0, base_wait * 0.5)

    async def fetch(
        self,
        endpoint: str,
        params: dict[str, Any],
        use_cache: bool = True,
    ) -> dict[str, Any]:
        """Fetch a ComicVine endpoint.

        Args:
            endpoint: API endpoint (e.g. "volumes", "issues", "volume/4050-12345")
            params: Query parameters (api_key and format are added automatically)
            use_cache: Whether to read/write the disk cache

        Returns:
            Decoded JSON response

        Raises:
            httpx.HTTPStatusError: For HTTP errors (after retries on 420/429)
            httpx.RequestError: For network errors (after retries)
            ComicVineError: When the response body reports an API error
        """
        cache_path = self._cache_path(endpoint, params) if use_cache else None
        cached = self._load_from_cache(cache_path)
        if cached is not None:
            logger.debug("Using cached response", endpoint=endpoint)
            return cached

        await self._wait_for_rate_limit()

        url = f"{self.base_url}/{endpoint.strip('/')}/"
        request_params = {"format": "json", **params, "api_key": self.api_key}
        logger.debug("Calling ComicVine API", endpoint=endpoint, params=params)

        attempt = 0
        while True:
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self._transport
                ) as client:
                    response = await client.get(
                        url,
                        params=request_params,
                        headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                    )
                    response.raise_for_status()
                    data = response.json()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status not in RETRYABLE_STATUS_CODES or attempt >= self.max_retries:
                    raise
                wait_time = self._backoff_seconds(attempt)
                logger.warning(
                    "Rate limited by ComicVine, retrying",
                    status_code=status,
                    attempt=attempt + 1,
                    wait_seconds=round(wait_time, 2),
                )
                attempt += 1
                await asyncio.sleep(wait_time)
                await self._wait_for_rate_limit()
                continue
            except httpx.RequestError as e:
                if attempt >= self.max_retries:
                    raise
                wait_time = 2**attempt
                logger.warning(
                    "Network error, retrying",
                    error=str(e),
                    attempt=attempt + 1,
                    wait_seconds=wait_time,
                )
                attempt += 1
                await asyncio.sleep(wait_time)
                continue

            # ComicVine reports API errors in the body (1 == OK)
            status_code = data.get("status_code", 1) if isinstance(data, dict) else 1
            if status_code != 1:
                raise ComicVineError(
                    f"ComicVine error {status_code}: {data.get('error', 'unknown error')}"
                )

            self._save_to_cache(cache_path, data)
            return data


def create_comicvine_client(settings: Settings) -> ComicVineClient | None:
    """Build a client from settings; None when no API key is configured."""
    if not settings.comicvine_api_key:
        logger.warning("ComicVine API key not configured, catalog search disabled")
        return None

    return ComicVineClient(
        api_key=settings.comicvine_api_key,
        base_url=settings.comicvine_base_url,
        rate_limit=settings.comicvine_rate_limit,
        rate_limit_period=settings.comicvine_rate_limit_period,
        cache_dir=settings.cache_dir / "comicvine",
    )
