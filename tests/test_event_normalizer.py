"""
Tests for event normalization and contact aggregation
"""

from datetime import datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from convertos.db.models import CheckoutEvent, Contact, Lead, Order, OrderStatus
from convertos.exceptions import NotFoundError, ValidationError
from convertos.services.contact_service import ContactDelta, ContactService, normalize_email
from convertos.services.event_normalizer import EventNormalizer, parse_timestamp


def _order_payload(event_type: str, **data):
    base = {
        "order_id": "1001",
        "total": "100.00",
        "currency": "USD",
        "customer_email": "Jane@Example.com",
        "customer_name": "Jane Doe",
        "utm_source": "facebook",
    }
    base.update(data)
    return {"event_id": f"evt_{event_type}", "event_type": event_type, "data": base}


async def _count(db: AsyncSession, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


# ============ Timestamps ============

def test_parse_timestamp_handles_z_suffix():
    assert parse_timestamp("2026-01-15T10:30:00Z") == datetime(2026, 1, 15, 10, 30, 0)


def test_parse_timestamp_converts_offsets_to_utc():
    assert parse_timestamp("2026-01-15T12:30:00+02:00") == datetime(2026, 1, 15, 10, 30, 0)


def test_parse_timestamp_falls_back_to_now():
    before = datetime.utcnow()
    assert parse_timestamp("not a date") >= before
    assert parse_timestamp(None) >= before


# ============ Leads ============

@pytest.mark.asyncio
async def test_lead_creates_lead_and_contact(db_session: AsyncSession, connection):
    conn, _ = connection
    normalizer = EventNormalizer(db_session)

    outcome = await normalizer.normalize(conn.client_id, conn.id, {
        "event_type": "lead.created",
        "timestamp": "2026-01-15T10:30:00Z",
        "data": {
            "name": "Sam Lee",
            "email": " Sam@Example.com ",
            "registration_type": "free",
            "utm_source": "google",
            "utm_campaign": "spring",
        },
    })
    await db_session.commit()

    assert outcome == "lead"
    lead = (await db_session.execute(select(Lead))).scalar_one()
    assert lead.utm_campaign == "spring"
    assert lead.registered_at == datetime(2026, 1, 15, 10, 30, 0)

    contact = await ContactService(db_session).get(conn.client_id, "sam@example.com")
    assert contact.lead_count == 1
    assert contact.contact_type == "lead"
    assert contact.first_source == "google"


@pytest.mark.asyncio
async def test_paid_registration_marks_contact_paid(db_session: AsyncSession, connection):
    conn, _ = connection
    await EventNormalizer(db_session).normalize(conn.client_id, conn.id, {
        "event_type": "lead.created",
        "data": {"email": "pay@example.com", "registration_type": "paid"},
    })
    contact = await ContactService(db_session).get(conn.client_id, "pay@example.com")
    assert contact.contact_type == "paid"
    assert contact.first_source == "direct"
    assert contact.lead_count == 0


@pytest.mark.asyncio
async def test_lead_without_email_creates_no_contact(db_session: AsyncSession, connection):
    conn, _ = connection
    await EventNormalizer(db_session).normalize(conn.client_id, conn.id, {
        "event_type": "lead.created",
        "data": {"name": "Anonymous"},
    })
    assert await _count(db_session, Lead) == 1
    assert await _count(db_session, Contact) == 0


# ============ Orders ============

@pytest.mark.asyncio
async def test_order_paid_upserts_order_and_counts_once(db_session: AsyncSession, connection):
    conn, _ = connection
    normalizer = EventNormalizer(db_session)

    await normalizer.normalize(conn.client_id, conn.id, _order_payload("order.created"))
    await normalizer.normalize(conn.client_id, conn.id, _order_payload("order.paid"))
    await normalizer.normalize(conn.client_id, conn.id, _order_payload("order.completed"))
    await db_session.commit()

    order = (await db_session.execute(select(Order))).scalar_one()
    assert order.status == OrderStatus.COMPLETED.value
    assert order.paid_at is not None
    assert order.total == 100.0

    contact = await ContactService(db_session).get(conn.client_id, "jane@example.com")
    assert contact.total_spent == 100.0
    assert contact.total_orders == 1
    assert contact.contact_type == "customer"


@pytest.mark.asyncio
async def test_order_created_defaults_to_pending(db_session: AsyncSession, connection):
    conn, _ = connection
    await EventNormalizer(db_session).normalize(conn.client_id, conn.id, _order_payload("order.created"))
    order = (await db_session.execute(select(Order))).scalar_one()
    assert order.status == OrderStatus.PENDING.value
    assert order.paid_at is None


@pytest.mark.asyncio
async def test_late_lifecycle_event_does_not_move_order_backwards(db_session: AsyncSession, connection):
    conn, _ = connection
    normalizer = EventNormalizer(db_session)

    await normalizer.normalize(conn.client_id, conn.id, _order_payload("order.paid"))
    await normalizer.normalize(conn.client_id, conn.id, _order_payload("order.created", status="pending"))
    order = (await db_session.execute(select(Order))).scalar_one()
    assert order.status == OrderStatus.PAID.value

    await normalizer.normalize(conn.client_id, conn.id, _order_payload("order.completed"))
    await normalizer.normalize(conn.client_id, conn.id, _order_payload("order.paid"))
    order = (await db_session.execute(select(Order))).scalar_one()
    assert order.status == OrderStatus.COMPLETED.value
    assert await _count(db_session, Order) == 1


@pytest.mark.asyncio
async def test_order_requires_order_id(db_session: AsyncSession, connection):
    conn, _ = connection
    with pytest.raises(ValidationError):
        await EventNormalizer(db_session).normalize(conn.client_id, conn.id, {
            "event_type": "order.paid",
            "data": {"total": 10},
        })


@pytest.mark.asyncio
async def test_order_rejects_unparseable_total(db_session: AsyncSession, connection):
    conn, _ = connection
    with pytest.raises(ValidationError):
        await EventNormalizer(db_session).normalize(conn.client_id, conn.id, _order_payload("order.paid", total="lots"))


@pytest.mark.asyncio
async def test_refund_is_terminal(db_session: AsyncSession, connection):
    conn, _ = connection
    normalizer = EventNormalizer(db_session)

    await normalizer.normalize(conn.client_id, conn.id, _order_payload("order.paid"))
    await normalizer.normalize(conn.client_id, conn.id, _order_payload("order.refunded"))
    await normalizer.normalize(conn.client_id, conn.id, _order_payload("order.completed"))

    order = (await db_session.execute(select(Order))).scalar_one()
    assert order.status == OrderStatus.REFUNDED.value
    assert order.refunded_at is not None


@pytest.mark.asyncio
async def test_refund_for_unknown_order_fails(db_session: AsyncSession, connection):
    conn, _ = connection
    with pytest.raises(NotFoundError):
        await EventNormalizer(db_session).normalize(conn.client_id, conn.id, _order_payload("order.refunded"))


# ============ Checkout, ping, unknown ============

@pytest.mark.asyncio
async def test_checkout_events_are_append_only(db_session: AsyncSession, connection):
    conn, _ = connection
    normalizer = EventNormalizer(db_session)
    for event_type in ("checkout.started", "checkout.abandoned", "checkout.started"):
        await normalizer.normalize(conn.client_id, conn.id, {
            "event_type": event_type,
            "data": {"checkout_id": "chk_1", "funnel_id": "f1", "step": "details"},
        })

    rows = (await db_session.execute(select(CheckoutEvent.event_type))).scalars().all()
    assert sorted(rows) == ["abandoned", "started", "started"]


@pytest.mark.asyncio
async def test_ping_and_unknown_are_acknowledged(db_session: AsyncSession, connection):
    conn, _ = connection
    normalizer = EventNormalizer(db_session)
    assert await normalizer.normalize(conn.client_id, conn.id, {"event_type": "test.ping", "data": {}}) == "ping"
    assert await normalizer.normalize(conn.client_id, conn.id, {"event_type": "coupon.applied", "data": {}}) == "unknown"
    assert normalizer.is_known("order.paid")
    assert not normalizer.is_known("coupon.applied")


@pytest.mark.asyncio
async def test_non_object_data_is_rejected(db_session: AsyncSession, connection):
    conn, _ = connection
    with pytest.raises(ValidationError):
        await EventNormalizer(db_session).normalize(conn.client_id, conn.id, {"event_type": "lead.created", "data": [1, 2]})


@pytest.mark.asyncio
async def test_custom_handler_registration(db_session: AsyncSession, connection):
    conn, _ = connection
    normalizer = EventNormalizer(db_session)
    seen = []

    async def handle_coupon(client_id, connection_id, event_type, data):
        seen.append(data["code"])
        return "coupon"

    normalizer.register("coupon.applied", handle_coupon)
    outcome = await normalizer.normalize(conn.client_id, conn.id, {"event_type": "coupon.applied", "data": {"code": "SAVE10"}})
    assert outcome == "coupon"
    assert seen == ["SAVE10"]


# ============ Contacts ============

def test_normalize_email():
    assert normalize_email("  Mixed@Case.COM ") == "mixed@case.com"
    assert normalize_email("   ") is None
    assert normalize_email(None) is None


@pytest.mark.asyncio
async def test_contact_counters_never_decrease(db_session: AsyncSession, tenant):
    contacts = ContactService(db_session)
    await contacts.upsert(tenant.id, "a@example.com", ContactDelta(total_spent=50.0, total_orders=1))
    await contacts.upsert(tenant.id, "a@example.com", ContactDelta(total_spent=-20.0, total_orders=-1, lead_count=-3))

    contact = await contacts.get(tenant.id, "a@example.com")
    assert contact.total_spent == 50.0
    assert contact.total_orders == 1
    assert contact.lead_count == 0


@pytest.mark.asyncio
async def test_contact_identity_overrides_but_first_source_sticks(db_session: AsyncSession, tenant):
    contacts = ContactService(db_session)
    await contacts.upsert(tenant.id, "b@example.com", ContactDelta(name="B", first_source="google", lead_count=1))
    await contacts.upsert(tenant.id, "B@example.com", ContactDelta(
        name="Bee", phone="555", contact_type="customer", first_source="facebook", last_source="facebook",
    ))

    contact = await contacts.get(tenant.id, "b@example.com")
    assert contact.name == "Bee"
    assert contact.phone == "555"
    assert contact.contact_type == "customer"
    assert contact.first_source == "google"
    assert contact.last_source == "facebook"
    assert contact.lead_count == 1
    assert await _count(db_session, Contact) == 1
