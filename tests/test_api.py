"""HTTP API + WebSocket endpoint tests.

Learn: The app is built with create_app(settings, redis=..., assets=...),
so the lifespan wires a fakeredis queue and an in-memory repository
instead of real servers. HTTP routes go through httpx's ASGITransport
(with the lifespan entered by hand); the WebSocket goes through
Starlette's TestClient, which runs the lifespan itself.
"""

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from starlette.websockets import WebSocketDisconnect

from conftest import TEST_SECRET, make_asset
from vaultsync.config import Settings
from vaultsync.domain.assets import AssetStatus
from vaultsync.main import create_app
from vaultsync.realtime.events import asset_processed_success
from vaultsync.repositories.memory import InMemoryAssetRepository


def _settings() -> Settings:
    return Settings(jwt_secret=TEST_SECRET, queue_name="api-test-queue")


@pytest_asyncio.fixture()
async def app(redis, assets):
    app = create_app(_settings(), redis=redis, assets=assets)
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture()
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ═══════════════════════════════════════════════════════════
# Health + middleware
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_health_reports_redis(client):
    r = await client.get("/api/v1/health")
    assert r.status_code == 200
    assert r.json()["redis"] == "ok"
    assert r.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_request_id_generated_and_propagated(client):
    r1 = await client.get("/api/v1/health")
    r2 = await client.get("/api/v1/health")
    assert r1.headers["X-Request-ID"] != r2.headers["X-Request-ID"]

    r = await client.get("/api/v1/health", headers={"X-Request-ID": "trace-123"})
    assert r.headers["X-Request-ID"] == "trace-123"


# ═══════════════════════════════════════════════════════════
# Analyze / retry
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_analyze_queues_job_and_marks_processing(client, app, assets, token_for):
    await assets.add(make_asset("A1", owner_id="U1", status=AssetStatus.DRAFT))

    r = await client.post("/api/v1/assets/A1/analyze", headers=_auth(token_for("U1")))

    assert r.status_code == 202
    body = r.json()
    assert body["asset_id"] == "A1"
    assert body["status"] == "processing"
    assert (await assets.get("A1")).status == AssetStatus.PROCESSING

    job = await app.state.queue.get_job(body["job_id"])
    assert job.asset_id == "A1"
    assert job.owner_id == "U1"
    assert job.image_ref == "https://x/y.jpg"


@pytest.mark.asyncio
async def test_analyze_requires_authentication(client, assets):
    await assets.add(make_asset("A1", status=AssetStatus.DRAFT))
    r = await client.post("/api/v1/assets/A1/analyze")
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_analyze_rejects_invalid_token(client):
    r = await client.post("/api/v1/assets/A1/analyze", headers=_auth("garbage"))
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_analyze_unknown_asset_is_404(client, token_for):
    r = await client.post("/api/v1/assets/NOPE/analyze", headers=_auth(token_for("U1")))
    assert r.status_code == 404
    assert "NOPE" in r.json()["error"]


@pytest.mark.asyncio
async def test_analyze_someone_elses_asset_is_403(client, assets, token_for):
    await assets.add(make_asset("A1", owner_id="U1", status=AssetStatus.DRAFT))
    r = await client.post("/api/v1/assets/A1/analyze", headers=_auth(token_for("U2")))
    assert r.status_code == 403
    assert (await assets.get("A1")).status == AssetStatus.DRAFT


@pytest.mark.asyncio
async def test_analyze_while_processing_is_409(client, assets, token_for):
    await assets.add(make_asset("A1", status=AssetStatus.PROCESSING))
    r = await client.post("/api/v1/assets/A1/analyze", headers=_auth(token_for("U1")))
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_analyze_asset_without_image_is_422(client, assets, token_for):
    await assets.add(make_asset("A1", status=AssetStatus.DRAFT, image_url=""))
    r = await client.post("/api/v1/assets/A1/analyze", headers=_auth(token_for("U1")))
    assert r.status_code == 422
    assert (await assets.get("A1")).status == AssetStatus.DRAFT


@pytest.mark.asyncio
async def test_retry_failed_asset(client, assets, token_for):
    await assets.add(make_asset("A1", status=AssetStatus.FAILED))
    r = await client.post("/api/v1/assets/A1/retry", headers=_auth(token_for("U1")))
    assert r.status_code == 202
    assert (await assets.get("A1")).status == AssetStatus.PROCESSING


@pytest.mark.asyncio
async def test_retry_active_asset_is_409(client, assets, token_for):
    await assets.add(make_asset("A1", status=AssetStatus.ACTIVE))
    r = await client.post("/api/v1/assets/A1/retry", headers=_auth(token_for("U1")))
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_queue_down_returns_503_and_restores_status(token_for):
    server = FakeServer()
    server.connected = False
    assets = InMemoryAssetRepository([make_asset("A1", status=AssetStatus.DRAFT)])
    app = create_app(
        _settings(), redis=FakeAsyncRedis(server=server, decode_responses=True), assets=assets
    )

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            r = await ac.post("/api/v1/assets/A1/analyze", headers=_auth(token_for("U1")))

    assert r.status_code == 503
    assert (await assets.get("A1")).status == AssetStatus.DRAFT


@pytest.mark.asyncio
async def test_queue_metrics(client, assets, token_for):
    await assets.add(make_asset("A1", status=AssetStatus.DRAFT))
    await client.post("/api/v1/assets/A1/analyze", headers=_auth(token_for("U1")))

    r = await client.get("/api/v1/queue/metrics")
    assert r.status_code == 200
    metrics = r.json()
    assert metrics["queue"] == "api-test-queue"
    assert metrics["waiting"] == 1
    assert metrics["failed"] == 0


# ═══════════════════════════════════════════════════════════
# WebSocket
# ═══════════════════════════════════════════════════════════


def _ws_app():
    return create_app(
        _settings(),
        redis=FakeAsyncRedis(decode_responses=True),
        assets=InMemoryAssetRepository(),
    )


def test_ws_without_token_gets_auth_required():
    with TestClient(_ws_app()) as tc:
        with tc.websocket_connect("/ws") as ws:
            ws.send_json({})
            assert ws.receive_json() == {
                "event": "connect_error",
                "message": "authentication required",
            }
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 4001


def test_ws_with_bad_token_gets_invalid_token():
    with TestClient(_ws_app()) as tc:
        with tc.websocket_connect("/ws?token=not-a-jwt") as ws:
            assert ws.receive_json()["message"] == "invalid token"


def test_ws_with_expired_token_gets_token_expired(token_for):
    with TestClient(_ws_app()) as tc:
        with tc.websocket_connect(f"/ws?token={token_for('U1', expires_minutes=-1)}") as ws:
            assert ws.receive_json()["message"] == "token expired"


def test_ws_token_in_first_frame_joins_room(token_for):
    with TestClient(_ws_app()) as tc:
        with tc.websocket_connect("/ws") as ws:
            ws.send_json({"token": token_for("U1")})
            frame = ws.receive_json()
            assert frame["event"] == "connected"
            assert frame["room"] == "owner:U1"

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}


def test_ws_receives_owner_events(token_for):
    app = _ws_app()
    with TestClient(app) as tc:
        with tc.websocket_connect(f"/ws?token={token_for('U1')}") as ws:
            assert ws.receive_json()["event"] == "connected"

            delivered = tc.portal.call(
                app.state.connections.emit_to_owner,
                "U1",
                asset_processed_success("A1", "active"),
            )

            assert delivered == 1
            event = ws.receive_json()
            assert event["event"] == "asset_processed"
            assert event["assetId"] == "A1"
