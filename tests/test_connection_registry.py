"""
Tests for the connection registry: lookup, secret rotation with a grace
window, the expiry sweep, event listing and the signed test ping.
"""

import json
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from convertos.db.models import ConnectionStatus, WebhookEvent
from convertos.exceptions import ConflictError, NotFoundError, ValidationError
from convertos.scripts.scheduled_tasks import setup_scheduler
from convertos.services.connection_registry import ConnectionRegistry, generate_secret
from convertos.services.signature import compute_signature, verify_for_connection

GRACE = timedelta(hours=24)
BODY = b'{"event_id":"evt_9","event_type":"test.ping","data":{}}'


def test_generated_secret_is_32_bytes_hex():
    secret = generate_secret()
    assert len(secret) == 64
    assert bytes.fromhex(secret)
    assert secret != generate_secret()


@pytest.mark.asyncio
async def test_create_connection_returns_secret_once(db_session: AsyncSession, connection):
    conn, secret = connection
    assert conn.connection_id.startswith("conn_")
    assert conn.connection_secret == secret
    assert conn.status == ConnectionStatus.ACTIVE.value
    assert conn.previous_secret is None


@pytest.mark.asyncio
async def test_lookup_by_external_id(db_session: AsyncSession, connection):
    conn, _ = connection
    registry = ConnectionRegistry(db_session)
    found = await registry.get_by_external_id(conn.connection_id)
    assert found.id == conn.id

    with pytest.raises(NotFoundError):
        await registry.get_by_external_id("conn_missing")


@pytest.mark.asyncio
async def test_create_connection_for_unknown_client(db_session: AsyncSession):
    registry = ConnectionRegistry(db_session)
    with pytest.raises(NotFoundError):
        await registry.create_connection("no-such-client", "site")


@pytest.mark.asyncio
async def test_rotation_keeps_old_secret_valid_during_grace(db_session: AsyncSession, connection):
    conn, old_secret = connection
    registry = ConnectionRegistry(db_session, grace=GRACE)
    rotated_at = datetime(2026, 3, 1, 9, 0, 0)

    result = await registry.rotate_secret(conn.id, now=rotated_at)

    assert result.new_secret != old_secret
    assert result.previous_valid_until == rotated_at + GRACE
    body = result.to_dict()
    assert body["success"] is True
    assert body["newSecret"] == result.new_secret
    assert body["previousSecretValidUntil"] == (rotated_at + GRACE).isoformat()

    refreshed = await registry.get(conn.id)
    assert refreshed.connection_secret == result.new_secret
    assert refreshed.previous_secret == old_secret

    old_sig = compute_signature(BODY, old_secret)
    new_sig = compute_signature(BODY, result.new_secret)
    assert verify_for_connection(BODY, old_sig, refreshed, rotated_at + timedelta(hours=12), GRACE)
    assert verify_for_connection(BODY, new_sig, refreshed, rotated_at + timedelta(hours=12), GRACE)
    assert not verify_for_connection(BODY, old_sig, refreshed, rotated_at + timedelta(hours=25), GRACE)


@pytest.mark.asyncio
async def test_second_rotation_inside_grace_is_refused(db_session: AsyncSession, connection):
    conn, _ = connection
    registry = ConnectionRegistry(db_session, grace=GRACE)
    rotated_at = datetime(2026, 3, 1, 9, 0, 0)
    await registry.rotate_secret(conn.id, now=rotated_at)

    with pytest.raises(ConflictError) as exc:
        await registry.rotate_secret(conn.id, now=rotated_at + timedelta(hours=1))
    assert exc.value.status_code == 409
    assert "previousSecretValidUntil" in exc.value.to_dict()


@pytest.mark.asyncio
async def test_forced_rotation_drops_in_grace_secret(db_session: AsyncSession, connection):
    conn, first_secret = connection
    registry = ConnectionRegistry(db_session, grace=GRACE)
    rotated_at = datetime(2026, 3, 1, 9, 0, 0)
    first = await registry.rotate_secret(conn.id, now=rotated_at)

    second = await registry.rotate_secret(conn.id, force=True, now=rotated_at + timedelta(hours=1))

    assert second.dropped_secret_in_grace is True
    refreshed = await registry.get(conn.id)
    assert refreshed.previous_secret == first.new_secret
    assert refreshed.previous_secret != first_secret


@pytest.mark.asyncio
async def test_rotation_after_grace_needs_no_force(db_session: AsyncSession, connection):
    conn, _ = connection
    registry = ConnectionRegistry(db_session, grace=GRACE)
    rotated_at = datetime(2026, 3, 1, 9, 0, 0)
    await registry.rotate_secret(conn.id, now=rotated_at)

    result = await registry.rotate_secret(conn.id, now=rotated_at + timedelta(hours=30))
    assert result.dropped_secret_in_grace is False


@pytest.mark.asyncio
async def test_rotation_rejects_non_wordpress(db_session: AsyncSession, connection):
    conn, _ = connection
    conn.type = "shopify"
    await db_session.commit()

    with pytest.raises(ValidationError):
        await ConnectionRegistry(db_session).rotate_secret(conn.id)


@pytest.mark.asyncio
async def test_rotate_unknown_connection(db_session: AsyncSession):
    with pytest.raises(NotFoundError):
        await ConnectionRegistry(db_session).rotate_secret("missing")


@pytest.mark.asyncio
async def test_sweep_clears_only_expired_previous_secrets(db_session: AsyncSession, tenant):
    registry = ConnectionRegistry(db_session, grace=GRACE)
    now = datetime(2026, 3, 2, 12, 0, 0)

    fresh, _ = await registry.create_connection(tenant.id, "fresh")
    stale, _ = await registry.create_connection(tenant.id, "stale")
    await registry.rotate_secret(fresh.id, now=now - timedelta(hours=2))
    await registry.rotate_secret(stale.id, now=now - timedelta(hours=48))

    cleared = await registry.expire_previous_secrets(now=now)
    assert cleared == 1

    await db_session.refresh(fresh)
    await db_session.refresh(stale)
    assert fresh.previous_secret is not None
    assert stale.previous_secret is None


@pytest.mark.asyncio
async def test_mark_seen_clears_last_error(db_session: AsyncSession, connection):
    conn, _ = connection
    registry = ConnectionRegistry(db_session)

    await registry.mark_error(conn.id, "boom")
    await db_session.refresh(conn)
    assert conn.last_error == "boom"
    assert conn.last_error_at is not None

    await registry.mark_seen(conn.id)
    await db_session.refresh(conn)
    assert conn.last_error is None
    assert conn.last_seen_at is not None


@pytest.mark.asyncio
async def test_list_events_newest_first(db_session: AsyncSession, connection):
    conn, _ = connection
    base = datetime(2026, 3, 1, 9, 0, 0)
    for i in range(3):
        db_session.add(WebhookEvent(
            client_id=conn.client_id,
            connection_id=conn.id,
            event_id=f"evt_{i}",
            event_type="lead.created",
            signature_valid=True,
            received_at=base + timedelta(minutes=i),
        ))
    await db_session.commit()

    events = await ConnectionRegistry(db_session).list_events(conn.id, limit=2)
    assert [e["eventId"] for e in events] == ["evt_2", "evt_1"]


@pytest.mark.asyncio
async def test_test_ping_signs_the_bytes_it_sends(db_session: AsyncSession, connection):
    conn, secret = connection
    received = {}

    def handler(request: httpx.Request) -> httpx.Response:
        received["body"] = request.content
        received["signature"] = request.headers["X-ConvertOS-Signature"]
        received["connection"] = request.headers["X-ConvertOS-Connection-Id"]
        return httpx.Response(200, json={"success": True})

    registry = ConnectionRegistry(db_session, transport=httpx.MockTransport(handler))
    result = await registry.send_test_ping(conn.id, "X-ConvertOS-Signature", "X-ConvertOS-Connection-Id")

    assert result["success"] is True
    assert received["connection"] == conn.connection_id
    assert received["signature"] == compute_signature(received["body"], secret)
    payload = json.loads(received["body"])
    assert payload["event_type"] == "test.ping"
    assert payload["event_id"] == result["eventId"]


@pytest.mark.asyncio
async def test_test_ping_reports_remote_error(db_session: AsyncSession, connection):
    conn, _ = connection
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"error": "Invalid signature"}))
    registry = ConnectionRegistry(db_session, transport=transport)

    result = await registry.send_test_ping(conn.id, "X-ConvertOS-Signature", "X-ConvertOS-Connection-Id")
    assert result["success"] is False
    assert result["status"] == 401


@pytest.mark.asyncio
async def test_test_ping_reports_transport_failure(db_session: AsyncSession, connection):
    conn, _ = connection

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    registry = ConnectionRegistry(db_session, transport=httpx.MockTransport(handler))
    result = await registry.send_test_ping(conn.id, "X-ConvertOS-Signature", "X-ConvertOS-Connection-Id")
    assert result["success"] is False
    assert "could not be delivered" in result["message"]


@pytest.mark.asyncio
async def test_test_ping_requires_webhook_url(db_session: AsyncSession, tenant):
    registry = ConnectionRegistry(db_session)
    conn, _ = await registry.create_connection(tenant.id, "no url")
    with pytest.raises(ValidationError):
        await registry.send_test_ping(conn.id, "X-ConvertOS-Signature", "X-ConvertOS-Connection-Id")


def test_scheduler_registers_secret_sweep():
    scheduler = setup_scheduler(sweep_interval_minutes=5)
    job = scheduler.get_job("secret_sweep")
    assert job is not None
    assert job.trigger.interval == timedelta(minutes=5)
