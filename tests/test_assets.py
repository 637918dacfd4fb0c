"""Asset lifecycle, producer service and repository tests."""

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer

from conftest import make_asset
from vaultsync.db.engine import build_engine, build_session_factory
from vaultsync.db.models import Base
from vaultsync.domain.assets import AssetStatus, ensure_transition, is_settled
from vaultsync.errors import (
    InvalidTransitionError,
    NotFoundError,
    OwnershipError,
    QueueUnavailableError,
)
from vaultsync.queue.redis_queue import JobQueue
from vaultsync.repositories.sql import SqlAssetRepository
from vaultsync.services.assets import AssetAnalysisService


# ═══════════════════════════════════════════════════════════
# Lifecycle rules
# ═══════════════════════════════════════════════════════════


@pytest.mark.parametrize(
    "old,new",
    [
        ("draft", "processing"),
        ("processing", "active"),
        ("processing", "partial"),
        ("processing", "failed"),
        ("failed", "processing"),
        ("partial", "processing"),
    ],
)
def test_allowed_transitions(old, new):
    ensure_transition(old, new)


@pytest.mark.parametrize(
    "old,new",
    [
        ("draft", "active"),
        ("active", "processing"),
        ("processing", "draft"),
        ("failed", "active"),
    ],
)
def test_forbidden_transitions(old, new):
    with pytest.raises(InvalidTransitionError) as exc:
        ensure_transition(old, new)
    assert exc.value.current == old
    assert exc.value.attempted == new


def test_settled_states():
    assert is_settled("active") and is_settled("partial") and is_settled("failed")
    assert not is_settled("draft") and not is_settled("processing")


# ═══════════════════════════════════════════════════════════
# Producer
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_request_analysis_enqueues_and_marks_processing(queue, assets):
    await assets.add(make_asset("A1", status=AssetStatus.DRAFT))
    svc = AssetAnalysisService(assets, queue)

    job_id = await svc.request_analysis("A1", "U1")

    assert (await assets.get("A1")).status == AssetStatus.PROCESSING
    job = await queue.get_job(job_id)
    assert (job.asset_id, job.owner_id, job.category) == ("A1", "U1", "sneaker")


@pytest.mark.asyncio
async def test_request_analysis_checks_existence_and_ownership(queue, assets):
    await assets.add(make_asset("A1", owner_id="U1", status=AssetStatus.DRAFT))
    svc = AssetAnalysisService(assets, queue)

    with pytest.raises(NotFoundError):
        await svc.request_analysis("missing", "U1")
    with pytest.raises(OwnershipError):
        await svc.request_analysis("A1", "U2")
    assert (await queue.metrics())["waiting"] == 0


@pytest.mark.asyncio
async def test_retry_only_from_failed_or_partial(queue, assets):
    await assets.add(make_asset("A1", status=AssetStatus.DRAFT))
    await assets.add(make_asset("A2", status=AssetStatus.PARTIAL))
    svc = AssetAnalysisService(assets, queue)

    with pytest.raises(InvalidTransitionError):
        await svc.retry_analysis("A1", "U1")

    first = await svc.retry_analysis("A2", "U1")
    await assets.set_status("A2", AssetStatus.FAILED)
    second = await svc.retry_analysis("A2", "U1")
    assert first != second


@pytest.mark.asyncio
async def test_enqueue_failure_restores_previous_status(assets):
    server = FakeServer()
    server.connected = False
    queue = JobQueue(FakeAsyncRedis(server=server, decode_responses=True))
    await assets.add(make_asset("A1", status=AssetStatus.FAILED))
    svc = AssetAnalysisService(assets, queue)

    with pytest.raises(QueueUnavailableError):
        await svc.retry_analysis("A1", "U1")

    assert (await assets.get("A1")).status == AssetStatus.FAILED


# ═══════════════════════════════════════════════════════════
# Repositories
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_memory_repository_hands_out_copies(assets):
    await assets.add(make_asset("A1"))
    copy = await assets.get("A1")
    copy.status = AssetStatus.ACTIVE
    assert (await assets.get("A1")).status == AssetStatus.PROCESSING


@pytest_asyncio.fixture()
async def sql_assets():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SqlAssetRepository(build_session_factory(engine))
    await engine.dispose()


@pytest.mark.asyncio
async def test_sql_repository_round_trip(sql_assets):
    await sql_assets.add(make_asset("A1"))

    asset = await sql_assets.get("A1")
    assert asset.owner_id == "U1"
    assert asset.status == AssetStatus.PROCESSING
    assert await sql_assets.get("missing") is None


@pytest.mark.asyncio
async def test_sql_repository_saves_analysis_and_failure(sql_assets):
    await sql_assets.add(make_asset("A1"))
    await sql_assets.add(make_asset("A2"))

    await sql_assets.save_analysis(
        "A1",
        AssetStatus.ACTIVE,
        {"brand": {"value": "Nike", "confidence": 0.8}},
        "https://cdn/a1.png",
    )
    await sql_assets.save_failure("A2", "Analysis service returned 422")

    a1 = await sql_assets.get("A1")
    assert a1.status == AssetStatus.ACTIVE
    assert a1.ai_metadata["brand"]["value"] == "Nike"
    assert a1.processed_image_url == "https://cdn/a1.png"

    a2 = await sql_assets.get("A2")
    assert a2.status == AssetStatus.FAILED
    assert a2.error == "Analysis service returned 422"
    assert a2.ai_metadata["error"] == "Analysis service returned 422"


@pytest.mark.asyncio
async def test_sql_repository_missing_asset_raises(sql_assets):
    with pytest.raises(NotFoundError):
        await sql_assets.set_status("missing", AssetStatus.PROCESSING)
    assert await sql_assets.delete("missing") is False
