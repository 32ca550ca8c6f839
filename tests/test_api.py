import base64
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from redis.exceptions import RedisError
from solders.transaction import Transaction
from sqlalchemy.exc import OperationalError

from pixelcanvas.api.routes.admin import get_session_maker
from pixelcanvas.api.routes.payments import get_payment_flow, get_verifier
from pixelcanvas.core.database import get_db
from pixelcanvas.main import app
from pixelcanvas.services.payment_flow import PaymentFlow
from pixelcanvas.services.redis_service import redis_service

from test_verifier import publish, transfer_record

ADMIN = {"X-Admin-Token": "test-admin-token"}


@pytest.fixture
async def client(session_maker, fake_redis, driver, tx_verifier):
    async def override_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_verifier] = lambda: tx_verifier
    app.dependency_overrides[get_payment_flow] = lambda: PaymentFlow(driver=driver, verifier=tx_verifier)
    app.dependency_overrides[get_session_maker] = lambda: session_maker

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def placement_body(x=0, y=0, width=100, height=100, owner="alice", **extra):
    return {
        "x": x,
        "y": y,
        "width": width,
        "height": height,
        "image_location": "https://images.example/cat.png",
        "owner_wallet": owner,
        **extra,
    }


async def create_placement(client, **kwargs):
    resp = await client.post("/placements", json=placement_body(**kwargs))
    assert resp.status_code == 200, resp.text
    return resp.json()["placement"]


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


# ============================================================
# PLACEMENTS
# ============================================================

async def test_create_placement(client):
    placement = await create_placement(client)

    assert placement["status"] == "PENDING_PAYMENT"
    assert placement["token"] == "SOL"
    assert Decimal(placement["cost"]) == Decimal("0.01")

    resp = await client.get(f"/placements/{placement['id']}")
    assert resp.json()["placement"]["id"] == placement["id"]


async def test_overlapping_placement_conflicts(client):
    first = await create_placement(client)

    resp = await client.post("/placements", json=placement_body(x=50, y=50, owner="bob"))

    assert resp.status_code == 409
    error = resp.json()["error"]
    assert error["code"] == "CONFLICT"
    assert error["details"]["conflicting_ids"] == [first["id"]]


@pytest.mark.parametrize("body", [
    placement_body(x=5),
    placement_body(x=-10),
    placement_body(x=950),
    placement_body(width=600),
    placement_body(width=0),
    placement_body(owner=""),
    placement_body(token="DOGE"),
])
async def test_invalid_placements(client, body):
    resp = await client.post("/placements", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_availability(client):
    resp = await client.get("/placements/availability", params={"x": 0, "y": 0, "width": 100, "height": 100})
    data = resp.json()
    assert data["available"]
    assert Decimal(data["cost"]) == Decimal("0.01")

    placement = await create_placement(client)

    data = (await client.get("/placements/availability", params={"x": 50, "y": 50, "width": 10, "height": 10})).json()
    assert not data["available"]
    assert data["conflicting_ids"] == [placement["id"]]


async def test_placement_at_point(client):
    placement = await create_placement(client, x=100, y=100, width=50, height=50)

    resp = await client.get("/placements/at", params={"x": 120, "y": 149})
    assert resp.json()["placement"]["id"] == placement["id"]

    resp = await client.get("/placements/at", params={"x": 150, "y": 100})
    assert resp.status_code == 404


async def test_list_placements(client):
    await create_placement(client, x=0)
    await create_placement(client, x=200)

    resp = await client.get("/placements")
    assert len(resp.json()["placements"]) == 2


async def test_unknown_placement(client):
    resp = await client.get("/placements/999")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


async def test_cancel_placement(client):
    placement = await create_placement(client)

    resp = await client.post(f"/placements/{placement['id']}/cancel", json={"owner_wallet": "mallory"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"

    resp = await client.post(f"/placements/{placement['id']}/cancel", json={"owner_wallet": "alice"})
    assert resp.json()["placement"]["status"] == "NOT_INITIATED"

    # The area can be taken again
    await create_placement(client, owner="bob")


# ============================================================
# AREA LOCKS
# ============================================================

async def test_area_lock_flow(client):
    resp = await client.post("/placements/locks", json={"x": 0, "y": 0, "width": 100, "height": 100, "owner_wallet": "alice"})
    assert resp.status_code == 200
    lock_id = resp.json()["lock"]["lock_id"]

    resp = await client.post("/placements/locks", json={"x": 50, "y": 50, "width": 100, "height": 100, "owner_wallet": "bob"})
    assert resp.status_code == 409

    # Locked for everyone but its owner
    resp = await client.post("/placements", json=placement_body(owner="bob"))
    assert resp.status_code == 409
    data = (await client.get(
        "/placements/availability",
        params={"x": 0, "y": 0, "width": 100, "height": 100, "owner_wallet": "bob"}
    )).json()
    assert not data["available"]
    assert data["locked_until"]

    await create_placement(client, owner="alice", lock_id=lock_id)
    resp = await client.delete(f"/placements/locks/{lock_id}")
    assert resp.status_code == 404


async def test_lock_limit_per_wallet(client):
    for x in (0, 100, 200):
        resp = await client.post("/placements/locks", json={"x": x, "y": 0, "width": 50, "height": 50, "owner_wallet": "alice"})
        assert resp.status_code == 200

    resp = await client.post("/placements/locks", json={"x": 300, "y": 0, "width": 50, "height": 50, "owner_wallet": "alice"})
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "RATE_LIMITED"


async def test_lock_requests_rate_limited(client):
    body = {"x": 5, "y": 0, "width": 50, "height": 50, "owner_wallet": "alice"}
    for _ in range(30):
        resp = await client.post("/placements/locks", json=body)
        assert resp.status_code == 400

    resp = await client.post("/placements/locks", json=body)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "RATE_LIMITED"


# ============================================================
# PAYMENTS
# ============================================================

async def initialize(client, placement_id, sender, **extra):
    resp = await client.post("/payments/initialize", json={
        "placement_id": placement_id,
        "amount": "0.01",
        "token": "SOL",
        "sender_wallet": sender,
        **extra,
    })
    assert resp.status_code == 200, resp.text
    return resp.json()["session"]


async def test_wallet_payment_end_to_end(client, payer, signer, fake_rpc, recipient):
    placement = await create_placement(client, owner=str(payer.pubkey()))
    session = await initialize(client, placement["id"], str(payer.pubkey()))
    assert session["status"] == "INITIALIZED"

    resp = await client.post(f"/payments/{session['id']}/transaction")
    prepared = resp.json()["transaction"]
    assert prepared["amount_base_units"] == 10_000_000

    tx = await signer(Transaction.from_bytes(base64.b64decode(prepared["transaction"])))
    resp = await client.post(f"/payments/{session['id']}/submit", json={
        "signed_transaction": base64.b64encode(bytes(tx)).decode(),
        "last_valid_block_height": prepared["last_valid_block_height"],
    })
    data = resp.json()
    assert data["success"]
    assert data["session"]["status"] == "CONFIRMED"

    resp = await client.get(f"/placements/{placement['id']}")
    assert resp.json()["placement"]["status"] == "CONFIRMED"
    assert fake_rpc.balances[recipient] == 10_000_000


async def test_initialize_is_idempotent_with_nonce(client):
    placement = await create_placement(client)
    first = await initialize(client, placement["id"], "alice", nonce="abc123")
    again = await initialize(client, placement["id"], "alice", nonce="abc123")
    assert again["id"] == first["id"]

    resp = await client.post("/payments/initialize", json={
        "placement_id": placement["id"], "amount": "0.01", "token": "SOL", "sender_wallet": "alice",
    })
    assert resp.status_code == 409


async def test_wrong_amount_rejected(client):
    placement = await create_placement(client)
    resp = await client.post("/payments/initialize", json={
        "placement_id": placement["id"], "amount": "0.001", "token": "SOL", "sender_wallet": "alice",
    })
    assert resp.status_code == 400
    assert resp.json()["error"]["details"]["expected_token"] == "SOL"


async def test_client_cannot_self_confirm(client):
    placement = await create_placement(client)
    session = await initialize(client, placement["id"], "alice")
    await client.post(f"/payments/{session['id']}/submission", json={"signature": "sig-never-sent"})

    resp = await client.post(f"/payments/{session['id']}/finalize", json={"outcome": "CONFIRMED"})

    data = resp.json()
    assert not data["success"]
    assert data["session"]["status"] == "PROCESSING"
    assert data["verification"]["status"] == "NOT_FOUND"


async def submitted_session(client, signature, **extra):
    placement = await create_placement(client)
    session = await initialize(client, placement["id"], "alice")
    resp = await client.post(f"/payments/{session['id']}/submission", json={"signature": signature, **extra})
    assert resp.status_code == 200, resp.text
    return resp.json()["session"]


async def test_failing_a_landed_payment_confirms_it(client, fake_rpc, recipient):
    session = await submitted_session(client, "sig-landed", last_valid_block_height=fake_rpc.block_height + 150)
    publish(fake_rpc, "sig-landed", transfer_record(recipient, 10_000_000))

    resp = await client.post(f"/payments/{session['id']}/finalize", json={"outcome": "FAILED"})

    data = resp.json()
    assert data["success"]
    assert data["session"]["status"] == "CONFIRMED"
    assert data["verification"]["status"] == "CONFIRMED"


async def test_in_flight_payment_cannot_be_failed(client, fake_rpc):
    session = await submitted_session(client, "sig-in-flight", last_valid_block_height=fake_rpc.block_height + 150)
    assert session["last_valid_block_height"] == fake_rpc.block_height + 150

    resp = await client.post(f"/payments/{session['id']}/finalize", json={"outcome": "TIMEOUT"})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "INVALID_STATE"

    resp = await client.post(f"/payments/{session['id']}/failure", json={"category": "BLOCKCHAIN_ERROR"})
    assert resp.status_code == 409

    resp = await client.get(f"/payments/{session['id']}")
    assert resp.json()["session"]["status"] == "PROCESSING"
    assert resp.json()["session"]["transaction_signature"] == "sig-in-flight"


async def test_expired_payment_can_be_failed(client, fake_rpc):
    session = await submitted_session(client, "sig-expired", last_valid_block_height=fake_rpc.block_height + 150)
    fake_rpc.block_height += 200

    resp = await client.post(f"/payments/{session['id']}/finalize", json={"outcome": "FAILED"})

    assert resp.status_code == 200
    assert resp.json()["session"]["status"] == "FAILED"


async def test_failure_report(client):
    placement = await create_placement(client)
    session = await initialize(client, placement["id"], "alice")

    resp = await client.post(f"/payments/{session['id']}/failure", json={"category": "USER_REJECTED"})

    data = resp.json()
    assert data["retry_allowed"]
    assert data["session"]["status"] == "PENDING"
    assert "declined" in data["user_message"]


async def test_cancel_payment_releases_area(client):
    placement = await create_placement(client)
    session = await initialize(client, placement["id"], "alice")

    resp = await client.post(f"/payments/{session['id']}/cancel")
    assert resp.json()["session"]["status"] == "CANCELED"

    resp = await client.post(f"/payments/{session['id']}/cancel")
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "INVALID_STATE"


async def test_verify_unknown_signature(client):
    resp = await client.post("/payments/verify", json={"signature": "sig-unknown"})

    data = resp.json()
    assert not data["success"]
    assert data["status"] == "NOT_FOUND"


async def test_unknown_session(client):
    resp = await client.get("/payments/00000000-0000-0000-0000-000000000000")
    assert resp.status_code == 404
    assert resp.headers["Cache-Control"] == "no-store"

    resp = await client.get("/payments/not-a-session-id")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


async def test_store_outage_reported_without_driver_text(client):
    async def broken_db():
        raise OperationalError("SELECT 1", {}, Exception("could not connect to secret-host"))
        yield

    app.dependency_overrides[get_db] = broken_db

    resp = await client.get("/placements")

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "STORE_ERROR"
    assert "secret-host" not in resp.text


# ============================================================
# ADMIN
# ============================================================

async def test_admin_requires_token(client):
    resp = await client.post("/admin/sweep")
    assert resp.status_code == 401

    resp = await client.post("/admin/sweep", headers={"X-Admin-Token": "wrong"})
    assert resp.status_code == 401


async def test_admin_sweep(client):
    resp = await client.post("/admin/sweep", headers=ADMIN)
    assert resp.status_code == 200
    report = resp.json()["report"]
    assert report["checked"] == 0

    resp = await client.get("/admin/sweep", headers=ADMIN)
    assert resp.json()["report"]["ran_at"] == report["ran_at"]


async def test_admin_sweep_survives_redis_outage(client, monkeypatch):
    monkeypatch.setattr(redis_service, "set_state", AsyncMock(side_effect=RedisError("connection refused")))

    resp = await client.post("/admin/sweep", headers=ADMIN)

    assert resp.status_code == 200
    assert resp.json()["success"]


async def test_admin_rpc_stats(client):
    resp = await client.get("/admin/rpc", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["network"] == "devnet"


async def test_admin_rpc_toggle(client):
    resp = await client.post("/admin/rpc/nope/disable", headers=ADMIN)
    assert resp.status_code == 404

    resp = await client.post("/admin/rpc/rpc1/disable", headers=ADMIN)
    assert resp.json()["success"]
    stats = (await client.get("/admin/rpc", headers=ADMIN)).json()
    rpc1 = next(e for e in stats["endpoints"] if e["id"] == "rpc1")
    assert rpc1["enabled"] is False

    resp = await client.post("/admin/rpc/rpc1/enable", headers=ADMIN)
    assert resp.json()["success"]
