"""
Database models for ConvertOS Core

Two groups of tables share one store:
- Event ingestion: connections, raw webhook events and the normalized
  leads, orders, checkout steps and contacts derived from them
- Ads automation: synced Meta snapshots (written by the sync job),
  per-account agent configuration and the execution audit trail
"""

from datetime import datetime
from typing import Optional, List
from enum import Enum
import uuid

from sqlalchemy import (
    String, Text, DateTime, Float, Integer, Boolean,
    ForeignKey, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship, Mapped, mapped_column, declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class ExecutionStatus(str, Enum):
    EXECUTED = "executed"
    FAILED = "failed"


# ============ Event Ingestion ============

class Client(Base):
    """A tenant that owns data source connections."""
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    connections: Mapped[List["DataSourceConnection"]] = relationship(back_populates="client")


class DataSourceConnection(Base):
    """
    A connected external platform that pushes signed webhooks.

    `connection_id` is the public identifier sent in the request header;
    `id` is internal. During the grace window after a rotation both
    `connection_secret` and `previous_secret` verify.
    """
    __tablename__ = "data_source_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(30), default="wordpress")
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Credentials
    connection_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    connection_secret: Mapped[str] = mapped_column(String(128), nullable=False)
    previous_secret: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    secret_rotated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=ConnectionStatus.ACTIVE.value)  # active | inactive
    webhook_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Observability
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client: Mapped["Client"] = relationship(back_populates="connections")

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE.value


class WebhookEvent(Base):
    """
    Raw inbound webhook, stored before normalization.

    `event_id` is the idempotency key. Deliveries rejected for a bad
    signature are kept for forensics with `event_id` NULL and the sender's
    id in `claimed_event_id`, so they never occupy the key.
    """
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(36), ForeignKey("data_source_connections.id"), nullable=False)
    event_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    claimed_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_type: Mapped[str] = mapped_column(String(100), default="unknown")
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    raw_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Body as UTF-8 text; undecodable bytes replaced with U+FFFD
    signature: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)

    # Processing state
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    received_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_webhook_events_connection_received", "connection_id", "received_at"),
        Index("ix_webhook_events_pending", "processed", "signature_valid"),
    )


class Lead(Base):
    """A lead captured by a form on the connected site."""
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    connection_id: Mapped[str] = mapped_column(String(36), ForeignKey("data_source_connections.id"), nullable=False)

    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    registration_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    form_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    campaign_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Attribution
    utm_source: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_medium: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_content: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_term: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    referrer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    landing_page: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fbclid: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gclid: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    registered_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Order(Base):
    """Storefront order. Upserted by `order_id`; only `status` moves to refunded afterwards."""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    connection_id: Mapped[str] = mapped_column(String(36), ForeignKey("data_source_connections.id"), nullable=False)

    total: Mapped[float] = mapped_column(Float, default=0.0)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value)  # pending | paid | completed | refunded
    payment_method: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Attribution
    utm_source: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_medium: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_content: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_term: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    referrer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fbclid: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gclid: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    origin_source: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    funnel_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    checkout_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    order_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CheckoutEvent(Base):
    """One funnel step. Insert-only history."""
    __tablename__ = "checkout_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    connection_id: Mapped[str] = mapped_column(String(36), ForeignKey("data_source_connections.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(20))  # started | abandoned | completed
    funnel_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    checkout_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    step: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    utm_source: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_medium: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_content: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    utm_term: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    referrer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    event_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Contact(Base):
    """Unified contact, one per (client, email). Counters only ever grow."""
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    contact_type: Mapped[str] = mapped_column(String(20), default="lead")  # lead | paid | customer
    first_source: Mapped[str] = mapped_column(String(200), default="direct")
    last_source: Mapped[str] = mapped_column(String(200), default="direct")

    total_spent: Mapped[float] = mapped_column(Float, default=0.0)
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    lead_count: Mapped[int] = mapped_column(Integer, default=0)

    first_seen: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_seen: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("client_id", "email", name="uq_contacts_client_email"),
    )


# ============ Meta Ads snapshots (written by the sync job) ============

class MetaAdAccount(Base):
    __tablename__ = "meta_ad_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    account_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)  # act_...
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class MetaCampaign(Base):
    __tablename__ = "meta_campaigns"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    campaign_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    objective: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    effective_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class MetaAdSet(Base):
    __tablename__ = "meta_ad_sets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    adset_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    effective_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class MetaAd(Base):
    __tablename__ = "meta_ads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    ad_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    adset_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    effective_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    creative_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    creative_title: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    creative_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class MetaInsight(Base):
    """Daily performance row for one entity (ad, ad set, campaign)."""
    __tablename__ = "meta_insights"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)  # ad | adset | campaign
    date_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    date_stop: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    spend: Mapped[float] = mapped_column(Float, default=0.0)
    impressions: Mapped[int] = mapped_column(Integer, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    reach: Mapped[int] = mapped_column(Integer, default=0)
    frequency: Mapped[float] = mapped_column(Float, default=0.0)
    leads: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("ix_meta_insights_entity_date", "entity_type", "entity_id", "date_start"),
    )


# ============ Ads Agent ============

class AgentConfig(Base):
    """Per-account thresholds for the ads agent."""
    __tablename__ = "agent_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    account_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    high_spend_threshold: Mapped[float] = mapped_column(Float, default=150.0)
    recent_launch_days: Mapped[int] = mapped_column(Integer, default=7)
    frequency_threshold: Mapped[float] = mapped_column(Float, default=3.5)
    max_changes_per_batch: Mapped[int] = mapped_column(Integer, default=5)
    allow_learning_edits: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AgentExecution(Base):
    """
    Audit record for one attempted recommendation.
    Written exactly once per attempt, whatever the outcome.
    """
    __tablename__ = "agent_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    recommendation_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    execution_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_level: Mapped[str] = mapped_column(String(20), default="unknown")
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    before_state: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    after_state: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    risk_level: Mapped[str] = mapped_column(String(20), default="unknown")
    approved_by: Mapped[str] = mapped_column(String(255), nullable=False)
    approved_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # executed | failed
    executed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    execution_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_agent_executions_account_executed", "account_id", "executed_at"),
    )
