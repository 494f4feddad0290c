"""
Event Normalizer — maps a typed webhook payload into domain entities.

Handlers are registered per event type. Anything without a handler falls
through to the `unknown` handler, which logs and acknowledges.

Usage:
    normalizer = EventNormalizer(db)
    outcome = await normalizer.normalize(client_id, connection_id, payload)
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from convertos.core.structured_logging import normalizer_log
from convertos.db.models import CheckoutEvent, Lead, Order, OrderStatus
from convertos.exceptions import NotFoundError, ValidationError
from convertos.services.contact_service import ContactDelta, ContactService

Handler = Callable[[str, str, str, Dict[str, Any]], Awaitable[str]]

LEAD_EVENTS = ("lead.created",)
ORDER_EVENTS = ("order.created", "order.paid", "order.completed")
REFUND_EVENTS = ("order.refunded",)
CHECKOUT_EVENTS = ("checkout.started", "checkout.abandoned", "checkout.completed")
PING_EVENTS = ("test.ping",)

_ORDER_STATUSES = {s.value for s in OrderStatus}

# Lifecycle order; an order only moves forward. Refunded is terminal and handled apart.
_STATUS_RANK = {
    OrderStatus.PENDING.value: 0,
    OrderStatus.PAID.value: 1,
    OrderStatus.COMPLETED.value: 2,
}


def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 (with or without `Z`) to naive UTC. Missing or unparseable means now."""
    if not value:
        return datetime.utcnow()
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            normalizer_log.warning("Unparseable timestamp, using now", {"value": str(value)})
            return datetime.utcnow()
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_amount(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")


def _attribution(data: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "utm_source": data.get("utm_source"),
        "utm_medium": data.get("utm_medium"),
        "utm_campaign": data.get("utm_campaign"),
        "utm_content": data.get("utm_content"),
        "utm_term": data.get("utm_term"),
        "referrer": data.get("referrer"),
    }


class EventNormalizer:
    """Dispatches payloads to per-type handlers with upsert semantics."""

    def __init__(self, db: AsyncSession, contacts: Optional[ContactService] = None):
        self.db = db
        self.contacts = contacts or ContactService(db)
        self._handlers: Dict[str, Handler] = {}

        for event_type in LEAD_EVENTS:
            self.register(event_type, self._handle_lead)
        for event_type in ORDER_EVENTS:
            self.register(event_type, self._handle_order)
        for event_type in REFUND_EVENTS:
            self.register(event_type, self._handle_refund)
        for event_type in CHECKOUT_EVENTS:
            self.register(event_type, self._handle_checkout)
        for event_type in PING_EVENTS:
            self.register(event_type, self._handle_ping)

    def register(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type] = handler

    def is_known(self, event_type: Optional[str]) -> bool:
        return bool(event_type) and event_type in self._handlers

    async def normalize(self, client_id: str, connection_id: str, payload: Dict[str, Any]) -> str:
        """
        Route a payload to its handler. Returns a short outcome label
        (e.g. "lead", "order", "unknown"); raises on processing failure.
        """
        event_type = payload.get("event_type") or "unknown"
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise ValidationError("Event data must be an object")
        if not data.get("timestamp") and payload.get("timestamp"):
            data = {**data, "timestamp": payload["timestamp"]}

        handler = self._handlers.get(event_type, self._handle_unknown)
        outcome = await handler(client_id, connection_id, event_type, data)
        await self.db.flush()
        return outcome

    # ── Handlers ───────────────────────────────────────────

    async def _handle_lead(self, client_id: str, connection_id: str, event_type: str, data: Dict[str, Any]) -> str:
        lead = Lead(
            client_id=client_id,
            connection_id=connection_id,
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
            registration_type=data.get("registration_type"),
            form_name=data.get("form_name"),
            campaign_name=data.get("campaign_name"),
            landing_page=data.get("landing_page"),
            fbclid=data.get("fbclid"),
            gclid=data.get("gclid"),
            registered_at=parse_timestamp(data.get("timestamp")),
            **_attribution(data),
        )
        self.db.add(lead)

        # Paid registrations are not counted as leads.
        contact_type = "paid" if data.get("registration_type") == "paid" else "lead"
        await self.contacts.upsert(client_id, data.get("email"), ContactDelta(
            name=data.get("name"),
            phone=data.get("phone"),
            contact_type=contact_type,
            first_source=data.get("utm_source") or "direct",
            lead_count=1 if contact_type == "lead" else 0,
        ))
        return "lead"

    async def _handle_order(self, client_id: str, connection_id: str, event_type: str, data: Dict[str, Any]) -> str:
        order_id = data.get("order_id")
        if not order_id:
            raise ValidationError("order_id is required for order events")
        order_id = str(order_id)

        total = parse_amount(data.get("total"))
        occurred_at = parse_timestamp(data.get("timestamp"))

        if event_type == "order.paid":
            status = OrderStatus.PAID.value
        elif event_type == "order.completed":
            status = OrderStatus.COMPLETED.value
        else:
            status = data.get("status") if data.get("status") in _ORDER_STATUSES else OrderStatus.PENDING.value

        fields = dict(
            client_id=client_id,
            connection_id=connection_id,
            total=total,
            currency=data.get("currency") or "USD",
            payment_method=data.get("payment_method"),
            coupon_code=data.get("coupon_code"),
            customer_email=data.get("customer_email"),
            customer_name=data.get("customer_name"),
            customer_phone=data.get("customer_phone"),
            fbclid=data.get("fbclid"),
            gclid=data.get("gclid"),
            origin_source=data.get("origin_source"),
            funnel_id=data.get("funnel_id"),
            checkout_id=data.get("checkout_id"),
            order_date=occurred_at,
            **_attribution(data),
        )

        result = await self.db.execute(select(Order).where(Order.order_id == order_id))
        order = result.scalar_one_or_none()
        created = order is None

        if created:
            order = Order(order_id=order_id, status=status, **fields)
            self.db.add(order)
        else:
            for key, value in fields.items():
                if key == "order_date":
                    continue
                if value is not None:
                    setattr(order, key, value)
            # A refund is terminal; late or out-of-order events never move status back.
            current_rank = _STATUS_RANK.get(order.status, -1)
            if order.status != OrderStatus.REFUNDED.value and _STATUS_RANK.get(status, -1) > current_rank:
                order.status = status

        if event_type == "order.paid" and order.paid_at is None:
            order.paid_at = occurred_at

        # Spend and order counters are contributed once per order.
        await self.contacts.upsert(client_id, data.get("customer_email"), ContactDelta(
            name=data.get("customer_name"),
            phone=data.get("customer_phone"),
            contact_type="customer",
            first_source=data.get("utm_source") or "direct",
            last_source=data.get("utm_source") or "direct",
            total_spent=total if created else 0.0,
            total_orders=1 if created else 0,
        ))
        return "order"

    async def _handle_refund(self, client_id: str, connection_id: str, event_type: str, data: Dict[str, Any]) -> str:
        order_id = data.get("order_id")
        if not order_id:
            raise ValidationError("order_id is required for refund events")

        result = await self.db.execute(select(Order).where(Order.order_id == str(order_id)))
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found for refund")

        order.status = OrderStatus.REFUNDED.value
        order.refunded_at = parse_timestamp(data.get("timestamp"))
        return "refund"

    async def _handle_checkout(self, client_id: str, connection_id: str, event_type: str, data: Dict[str, Any]) -> str:
        self.db.add(CheckoutEvent(
            client_id=client_id,
            connection_id=connection_id,
            event_type=event_type.replace("checkout.", ""),
            funnel_id=data.get("funnel_id"),
            checkout_id=data.get("checkout_id"),
            step=data.get("step"),
            email=data.get("email"),
            phone=data.get("phone"),
            event_date=parse_timestamp(data.get("timestamp")),
            **_attribution(data),
        ))
        return "checkout"

    async def _handle_ping(self, client_id: str, connection_id: str, event_type: str, data: Dict[str, Any]) -> str:
        normalizer_log.info("Test ping received")
        return "ping"

    async def _handle_unknown(self, client_id: str, connection_id: str, event_type: str, data: Dict[str, Any]) -> str:
        normalizer_log.warning("Unknown event type, acknowledged without processing", {"event_type": event_type})
        return "unknown"
