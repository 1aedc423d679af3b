"""
SukiStudy - WaniKani API Client

Async HTTP client for the WaniKani v2 API. Every request, retries included,
is admitted through a shared sliding-window rate limiter so the request
budget is global across endpoints and concurrent callers.

- 401 raises AuthenticationError (callers own credential/data cleanup)
- 429 waits a fixed cooldown and retries, up to a bounded number of times
- any other non-2xx raises APIError carrying the status code
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx

from .config import Settings, get_settings
from .exceptions import APIError, AuthenticationError, NetworkError, RateLimitError
from .models import CollectionPage, Resource, Summary

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


# =============================================================================
# Rate Limiter
# =============================================================================

class RateLimiter:
    """Sliding window limiter over the timestamps of the last N requests."""

    def __init__(
        self,
        max_requests: int = 50,
        window_seconds: float = 60.0,
        safety_margin: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.safety_margin = safety_margin
        self.window: deque[float] = deque()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self.window and self.window[0] <= cutoff:
            self.window.popleft()

    async def acquire(self) -> float:
        """
        Wait until the window has room, then record this request.

        The window is re-checked after every sleep since other callers may
        have used the budget in the meantime.

        Returns:
            Total seconds spent waiting.
        """
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self.window) < self.max_requests:
                    self.window.append(now)
                    return waited

                wait_time = self.window[0] + self.window_seconds - now + self.safety_margin
                logger.debug(f"Rate limit window full, waiting {wait_time:.2f}s")
                await self._sleep(wait_time)
                waited += wait_time

    @property
    def remaining(self) -> int:
        """Requests still available in the current window."""
        self._prune(self._clock())
        return max(0, self.max_requests - len(self.window))


# =============================================================================
# API Client
# =============================================================================

class WaniKaniClient:
    """Authenticated, rate-limited client for the WaniKani v2 API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        token: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.token = token
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=self.settings.requests_per_minute,
            window_seconds=self.settings.rate_limit_window,
            safety_margin=self.settings.rate_limit_margin,
        )
        self._transport = transport
        self._sleep = sleep
        self._http_client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "WaniKaniClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def set_token(self, token: str) -> None:
        self.token = token

    def clear_token(self) -> None:
        self.token = None

    @property
    def has_token(self) -> bool:
        return bool(self.token)

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.api_timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    def _build_url(self, endpoint_or_url: str) -> str:
        if endpoint_or_url.startswith(("http://", "https://")):
            return endpoint_or_url
        return f"{self.settings.api_base_url}{endpoint_or_url}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Wanikani-Revision": self.settings.api_revision,
        }

    async def request(
        self,
        endpoint_or_url: str,
        method: str = "GET",
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Make an authenticated API request and return the JSON body.

        Args:
            endpoint_or_url: Relative endpoint ("/subjects") or an absolute
                URL such as a pagination ``next_url``
            method: HTTP method
            params: Query parameters
            json: JSON request body

        Raises:
            AuthenticationError: No token set, or the API answered 401
            RateLimitError: Still throttled after the allowed retries
            APIError: Any other non-2xx status
            NetworkError: Transport failure or timeout
        """
        if not self.token:
            raise AuthenticationError("API token not set")

        client = await self._get_http_client()
        url = self._build_url(endpoint_or_url)
        headers = self._headers()
        max_retries = self.settings.max_rate_limit_retries
        cooldown = self.settings.rate_limit_cooldown
        retries = 0

        while True:
            await self.rate_limiter.acquire()

            try:
                response = await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=headers,
                )
            except httpx.RequestError as e:
                raise NetworkError(f"Network error calling {url}: {e}") from e

            if response.status_code == 401:
                raise AuthenticationError("Invalid API token")

            if response.status_code == 429:
                if retries >= max_retries:
                    raise RateLimitError(
                        f"Rate limit exceeded after {retries} retries: {url}",
                        attempts=retries + 1,
                    )
                retries += 1
                logger.warning(
                    f"Rate limited, waiting {cooldown}s (retry {retries}/{max_retries})"
                )
                await self._sleep(cooldown)
                continue

            if not response.is_success:
                raise APIError(response.status_code, response.reason_phrase or response.text)

            try:
                return response.json()
            except ValueError as e:
                raise APIError(response.status_code, "Failed to decode JSON response") from e

    async def get_collection(self, endpoint_or_url: str, params: Optional[dict[str, Any]] = None) -> CollectionPage:
        body = await self.request(endpoint_or_url, params=params)
        return CollectionPage.model_validate(body)

    # === Profile ===

    async def get_user(self) -> Resource:
        return Resource.model_validate(await self.request("/user"))

    async def get_summary(self) -> Summary:
        body = await self.request("/summary")
        return Summary.model_validate(body.get("data", {}))

    # === Subjects ===

    async def get_subjects(self, ids: Iterable[int]) -> CollectionPage:
        ids = list(ids)
        if not ids:
            return CollectionPage.empty()
        return await self.get_collection("/subjects", params={"ids": _join(ids)})

    async def get_level_subjects(self, level: int) -> CollectionPage:
        return await self.get_collection("/subjects", params={"levels": str(level)})

    async def get_subjects_by(
        self,
        levels: Optional[Iterable[int]] = None,
        types: Optional[Iterable[str]] = None,
    ) -> CollectionPage:
        params = {}
        if levels:
            params["levels"] = _join(levels)
        if types:
            params["types"] = _join(types)
        return await self.get_collection("/subjects", params=params)

    async def get_subjects_updated_after(self, updated_after: Optional[str] = None) -> CollectionPage:
        return await self.get_collection("/subjects", params=_updated_after(updated_after))

    # === Assignments ===

    async def get_assignments(
        self,
        subject_ids: Optional[Iterable[int]] = None,
        levels: Optional[Iterable[int]] = None,
        srs_stages: Optional[Iterable[int]] = None,
    ) -> CollectionPage:
        subject_ids = list(subject_ids) if subject_ids is not None else None
        levels = list(levels) if levels is not None else None

        # An explicitly empty id filter must not turn into "everything"
        if subject_ids is not None and not subject_ids and not levels:
            return CollectionPage.empty()

        params = {}
        if subject_ids:
            params["subject_ids"] = _join(subject_ids)
        if levels:
            params["levels"] = _join(levels)
        if srs_stages:
            params["srs_stages"] = _join(srs_stages)
        return await self.get_collection("/assignments", params=params)

    async def get_assignments_updated_after(self, updated_after: Optional[str] = None) -> CollectionPage:
        return await self.get_collection("/assignments", params=_updated_after(updated_after))

    # === Study Materials ===

    async def get_study_materials(self, subject_ids: Iterable[int]) -> CollectionPage:
        subject_ids = list(subject_ids)
        if not subject_ids:
            return CollectionPage.empty()
        return await self.get_collection("/study_materials", params={"subject_ids": _join(subject_ids)})

    async def get_study_materials_updated_after(self, updated_after: Optional[str] = None) -> CollectionPage:
        return await self.get_collection("/study_materials", params=_updated_after(updated_after))

    # === Write Actions ===

    async def start_assignment(self, assignment_id: int) -> Resource:
        """Mark an assignment as started (lesson completed)."""
        body = await self.request(f"/assignments/{assignment_id}/start", method="PUT", json={})
        return Resource.model_validate(body)

    async def create_review(
        self,
        assignment_id: int,
        incorrect_meaning_answers: int = 0,
        incorrect_reading_answers: int = 0,
    ) -> dict[str, Any]:
        """
        Submit a review outcome.

        Returns:
            The raw response body; ``resources_updated.assignment`` holds the
            updated assignment resource when the API includes it.
        """
        payload = {
            "review": {
                "assignment_id": assignment_id,
                "incorrect_meaning_answers": incorrect_meaning_answers,
                "incorrect_reading_answers": incorrect_reading_answers,
            }
        }
        return await self.request("/reviews", method="POST", json=payload)


def _join(values: Iterable[Any]) -> str:
    return ",".join(str(v) for v in values)


def _updated_after(updated_after: Optional[str]) -> dict[str, str]:
    return {"updated_after": updated_after} if updated_after else {}
