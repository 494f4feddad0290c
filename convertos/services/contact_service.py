"""
Contact Aggregator — one lifetime-accumulating contact per (client, email).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from convertos.db.models import Contact

logger = logging.getLogger(__name__)


@dataclass
class ContactDelta:
    """Changes contributed by one normalized event."""
    name: Optional[str] = None
    phone: Optional[str] = None
    contact_type: Optional[str] = None  # lead | paid | customer
    first_source: Optional[str] = None
    last_source: Optional[str] = None
    total_spent: float = 0.0
    total_orders: int = 0
    lead_count: int = 0


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    email = email.strip().lower()
    return email or None


class ContactService:
    """Applies ContactDeltas with override-identity / accumulate-counters semantics."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, client_id: str, email: str) -> Optional[Contact]:
        result = await self.db.execute(
            select(Contact).where(Contact.client_id == client_id, Contact.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def upsert(self, client_id: str, email: Optional[str], delta: ContactDelta) -> Optional[Contact]:
        """
        Merge `delta` into the contact for (client_id, email).

        Counters never decrease: negative increments are ignored. Returns
        None when the event carries no usable email.
        """
        email = normalize_email(email)
        if email is None:
            logger.info("Skipping contact update for event without email")
            return None

        now = datetime.utcnow()
        spent = max(delta.total_spent or 0.0, 0.0)
        orders = max(delta.total_orders or 0, 0)
        leads = max(delta.lead_count or 0, 0)

        contact = await self.get(client_id, email)
        if contact is not None:
            if delta.name:
                contact.name = delta.name
            if delta.phone:
                contact.phone = delta.phone
            if delta.contact_type:
                contact.contact_type = delta.contact_type
            if delta.last_source:
                contact.last_source = delta.last_source
            contact.total_spent = (contact.total_spent or 0.0) + spent
            contact.total_orders = (contact.total_orders or 0) + orders
            contact.lead_count = (contact.lead_count or 0) + leads
            contact.last_seen = now
        else:
            first_source = delta.first_source or "direct"
            contact = Contact(
                client_id=client_id,
                email=email,
                name=delta.name,
                phone=delta.phone,
                contact_type=delta.contact_type or "lead",
                first_source=first_source,
                last_source=delta.last_source or first_source,
                total_spent=spent,
                total_orders=orders,
                lead_count=leads,
                first_seen=now,
                last_seen=now,
            )
            self.db.add(contact)

        await self.db.flush()
        return contact
