"""Shared fixtures — fakeredis queue, in-memory assets, signed tokens.

Learn: Nothing here needs a running server:
- FakeAsyncRedis stands in for Redis (LMOVE, WATCH/MULTI, sorted sets)
- InMemoryAssetRepository stands in for the database
- FakeClock drives lease deadlines and backoff delays, so tests jump
  through time instead of sleeping
- httpx.MockTransport plays the external analysis service
"""

import asyncio
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from vaultsync.auth.jwt import create_access_token
from vaultsync.domain.assets import Asset, AssetStatus
from vaultsync.queue.jobs import JobOptions
from vaultsync.queue.redis_queue import JobQueue
from vaultsync.repositories.memory import InMemoryAssetRepository
from vaultsync.services.analysis_client import AnalysisClient

TEST_SECRET = "test-secret-for-vaultsync-tests-0123456789"
ANALYSIS_URL = "http://analysis.test"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEmitter:
    """EventEmitter that remembers every (owner, payload) it was given."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def emit_to_owner(self, owner_id: str, payload: dict[str, Any]) -> int:
        self.events.append((owner_id, payload))
        return 1


class RecordingTransport:
    """Stands in for a WebSocket: collects every JSON frame sent to it."""

    def __init__(self, fail: bool = False, hang: bool = False):
        self.sent: list[dict[str, Any]] = []
        self.fail = fail
        self.hang = hang

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionResetError("socket went away")
        if self.hang:
            await asyncio.sleep(3600)
        self.sent.append(data)


def make_asset(
    asset_id: str = "A1",
    owner_id: str = "U1",
    status: AssetStatus = AssetStatus.PROCESSING,
    image_url: str = "https://x/y.jpg",
    category: str = "sneaker",
) -> Asset:
    return Asset(
        id=asset_id,
        owner_id=owner_id,
        category=category,
        status=status,
        image_url=image_url,
    )


def analysis_client_for(handler) -> AnalysisClient:
    """AnalysisClient whose HTTP calls are answered by `handler(request)`."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnalysisClient(ANALYSIS_URL, timeout=5.0, http_client=http)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest_asyncio.fixture()
async def redis():
    r = FakeAsyncRedis(decode_responses=True)
    yield r
    await r.flushall()
    await r.aclose()


@pytest_asyncio.fixture()
async def queue(redis, clock):
    return JobQueue(
        redis,
        name="test-queue",
        options=JobOptions(attempts=3, backoff_delay=2.0, lease_seconds=30.0, max_stalled_count=2),
        clock=clock,
    )


@pytest.fixture()
def assets():
    return InMemoryAssetRepository()


@pytest.fixture()
def emitter():
    return RecordingEmitter()


@pytest.fixture()
def token_for():
    def _make(owner_id: str, expires_minutes: float = 15) -> str:
        return create_access_token(owner_id, expires_minutes=expires_minutes, secret=TEST_SECRET)

    return _make
