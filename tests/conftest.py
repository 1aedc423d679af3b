"""
Shared fixtures: a scripted WaniKani API behind httpx.MockTransport, fake
clocks, and a temporary local store.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import pytest

from sukistudy.client import RateLimiter, WaniKaniClient
from sukistudy.config import Settings
from sukistudy.store import LocalStore

BASE_URL = "https://api.wanikani.com/v2"
START = datetime(2026, 2, 10, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Payload builders
# =============================================================================

def resource(obj: str, id: Optional[int], **data: Any) -> dict:
    return {
        "id": id,
        "object": obj,
        "url": f"{BASE_URL}/{obj}s/{id}",
        "data_updated_at": "2026-01-01T00:00:00.000000Z",
        "data": data,
    }


def collection(resources: list[dict], next_url: Optional[str] = None) -> dict:
    return {
        "object": "collection",
        "url": BASE_URL,
        "pages": {"per_page": 500, "next_url": next_url, "previous_url": None},
        "total_count": len(resources),
        "data": resources,
    }


def subject_resource(id: int, level: int = 1, obj: str = "kanji", **data: Any) -> dict:
    data.setdefault("characters", f"字{id}")
    data.setdefault("meanings", [{"meaning": f"meaning {id}", "primary": True, "accepted_answer": True}])
    return resource(obj, id, level=level, slug=f"s{id}", **data)


def assignment_resource(id: int, subject_id: int, srs_stage: int = 1, available_at: Optional[str] = None, **data: Any) -> dict:
    return resource(
        "assignment",
        id,
        subject_id=subject_id,
        subject_type="kanji",
        srs_stage=srs_stage,
        available_at=available_at,
        **data,
    )


def user_resource(username: str = "suki", level: int = 5) -> dict:
    return {
        "object": "user",
        "url": f"{BASE_URL}/user",
        "data_updated_at": "2026-01-01T00:00:00.000000Z",
        "data": {
            "id": "5a6a5234-a392-4a87-8f3f-33342afe8a42",
            "username": username,
            "level": level,
            "profile_url": f"https://www.wanikani.com/users/{username}",
        },
    }


def subject_record(id: int, level: int = 1, obj: str = "kanji", **extra: Any) -> dict:
    record = {"id": id, "object": obj, "level": level, "characters": f"字{id}"}
    record.update(extra)
    return record


def assignment_record(id: int, subject_id: int, srs_stage: int = 1, available_at: Optional[datetime] = None, **extra: Any) -> dict:
    record = {
        "id": id,
        "subject_id": subject_id,
        "srs_stage": srs_stage,
        "available_at": available_at.isoformat() if available_at else None,
    }
    record.update(extra)
    return record


# =============================================================================
# Fakes
# =============================================================================

class FakeWaniKani:
    """
    Scripted API. Responses are queued per path; the last response for a
    path keeps being served once the queue is down to one entry.
    """

    def __init__(self, now: Optional["FakeNow"] = None):
        self.routes: dict[str, list[Any]] = {}
        self.requests: list[httpx.Request] = []
        self.seen_at: list[datetime] = []
        self.now = now
        self.holds: dict[str, tuple[asyncio.Event, asyncio.Event]] = {}

    def add(self, path: str, *responses: Any) -> None:
        """Queue responses: (status, body) tuples, bodies (200) or exceptions."""
        self.routes.setdefault(f"/v2{path}", []).extend(responses)

    def hold(self, path: str) -> tuple[asyncio.Event, asyncio.Event]:
        """Block requests to ``path`` until released. Returns (arrived, release)."""
        events = (asyncio.Event(), asyncio.Event())
        self.holds[f"/v2{path}"] = events
        return events

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == f"/v2{path}"]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        # Let other coroutines run, as a real network call would
        await asyncio.sleep(0)
        self.requests.append(request)
        if self.now is not None:
            self.seen_at.append(self.now.value)
            self.now.tick()

        if request.url.path in self.holds:
            arrived, release = self.holds[request.url.path]
            arrived.set()
            await release.wait()

        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"error": "Not found", "code": 404})

        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, tuple):
            status, body = response
        else:
            status, body = 200, response
        return httpx.Response(status, json=body)


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += max(0.0, seconds)


class FakeNow:
    """Wall clock for cursors and reviewability; ticks one second per request."""

    def __init__(self, start: datetime = START):
        self.value = start

    def __call__(self) -> datetime:
        return self.value

    def tick(self, seconds: float = 1.0) -> None:
        self.value += timedelta(seconds=seconds)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings pointing the local store at a temp directory."""
    return Settings(data_dir=tmp_path, api_base_url=BASE_URL)


@pytest.fixture
def store(tmp_path):
    """Create a store with a temp database."""
    return LocalStore(tmp_path / "test.db")


@pytest.fixture
def now():
    return FakeNow()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def api(now):
    return FakeWaniKani(now)


@pytest.fixture
def client(settings, api, clock):
    """Client wired to the scripted API with instant sleeps."""
    limiter = RateLimiter(
        max_requests=settings.requests_per_minute,
        window_seconds=settings.rate_limit_window,
        safety_margin=settings.rate_limit_margin,
        clock=clock,
        sleep=clock.sleep,
    )
    return WaniKaniClient(
        settings,
        token="test-token",
        rate_limiter=limiter,
        transport=httpx.MockTransport(api.handler),
        sleep=clock.sleep,
    )
