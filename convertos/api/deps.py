"""
Composition point for request-scoped services.

Settings are read here and passed into constructors; the services
themselves never touch process-wide configuration. Tests override
`get_db` and `get_ads_client` through `app.dependency_overrides`.
"""

from datetime import timedelta
from typing import AsyncIterator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from convertos.config import Settings, settings
from convertos.db import get_db
from convertos.services.ads_platform import MetaAdsClient
from convertos.services.connection_registry import ConnectionRegistry
from convertos.services.execution_service import ExecutionOrchestrator
from convertos.services.recommendation_engine import AgentService
from convertos.services.webhook_ingestor import WebhookIngestor


def build_registry(db: AsyncSession, cfg: Settings = settings) -> ConnectionRegistry:
    return ConnectionRegistry(
        db,
        grace=timedelta(hours=cfg.secret_grace_hours),
        http_timeout=cfg.test_ping_timeout_seconds,
    )


def build_ingestor(db: AsyncSession, cfg: Settings = settings) -> WebhookIngestor:
    return WebhookIngestor(
        db,
        registry=build_registry(db, cfg),
        grace=timedelta(hours=cfg.secret_grace_hours),
    )


def build_agent_service(db: AsyncSession, cfg: Settings = settings) -> AgentService:
    return AgentService(
        db,
        max_data_age=timedelta(minutes=cfg.max_data_age_minutes),
        min_spend=cfg.min_spend_for_pause,
        min_impressions=cfg.min_impressions_for_pause,
        window_days=cfg.analysis_window_days,
        config_defaults={
            "high_spend_threshold": cfg.default_high_spend_threshold,
            "recent_launch_days": cfg.default_recent_launch_days,
            "frequency_threshold": cfg.default_frequency_threshold,
            "max_changes_per_batch": cfg.default_max_changes_per_batch,
        },
    )


def build_ads_client(cfg: Settings = settings) -> MetaAdsClient:
    return MetaAdsClient(
        access_token=cfg.meta_access_token,
        api_version=cfg.meta_api_version,
        base_url=cfg.meta_graph_url,
        timeout=cfg.ads_request_timeout_seconds,
    )


# ============ FastAPI dependencies ============

async def get_registry(db: AsyncSession = Depends(get_db)) -> ConnectionRegistry:
    return build_registry(db)


async def get_ingestor(db: AsyncSession = Depends(get_db)) -> WebhookIngestor:
    return build_ingestor(db)


async def get_agent_service(db: AsyncSession = Depends(get_db)) -> AgentService:
    return build_agent_service(db)


async def get_ads_client() -> AsyncIterator[MetaAdsClient]:
    client = build_ads_client()
    try:
        yield client
    finally:
        await client.aclose()


async def get_orchestrator(
    db: AsyncSession = Depends(get_db),
    ads: MetaAdsClient = Depends(get_ads_client),
    agent: AgentService = Depends(get_agent_service),
) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(db, ads=ads, agent=agent)
