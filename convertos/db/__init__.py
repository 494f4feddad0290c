from convertos.db.models import (
    Base,
    # Event ingestion
    Client, DataSourceConnection, ConnectionStatus, WebhookEvent,
    Lead, Order, OrderStatus, CheckoutEvent, Contact,
    # Meta snapshots
    MetaAdAccount, MetaCampaign, MetaAdSet, MetaAd, MetaInsight,
    # Ads agent
    AgentConfig, AgentExecution, ExecutionStatus,
)
from convertos.db.database import get_db, init_db, drop_db, async_session_maker, engine

__all__ = [
    "Base",
    # Event ingestion
    "Client",
    "DataSourceConnection",
    "ConnectionStatus",
    "WebhookEvent",
    "Lead",
    "Order",
    "OrderStatus",
    "CheckoutEvent",
    "Contact",
    # Meta snapshots
    "MetaAdAccount",
    "MetaCampaign",
    "MetaAdSet",
    "MetaAd",
    "MetaInsight",
    # Ads agent
    "AgentConfig",
    "AgentExecution",
    "ExecutionStatus",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
]
