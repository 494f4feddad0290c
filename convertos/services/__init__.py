from convertos.services.signature import compute_signature, verify, verify_for_connection
from convertos.services.connection_registry import ConnectionRegistry, RotationResult, generate_secret
from convertos.services.contact_service import ContactService, ContactDelta
from convertos.services.event_normalizer import EventNormalizer
from convertos.services.webhook_ingestor import WebhookIngestor, IngestResult
from convertos.services.recommendation_engine import (
    AgentService, AgentThresholds, RecommendationEngine, Recommendation,
    AdSnapshot, AdSetSnapshot, InsightSnapshot
)
from convertos.services.ads_platform import MetaAdsClient, PlatformResponse
from convertos.services.execution_service import ExecutionOrchestrator, ExecutionReport

__all__ = [
    "compute_signature",
    "verify",
    "verify_for_connection",
    "ConnectionRegistry",
    "RotationResult",
    "generate_secret",
    "ContactService",
    "ContactDelta",
    "EventNormalizer",
    "WebhookIngestor",
    "IngestResult",
    # Ads agent
    "AgentService",
    "AgentThresholds",
    "RecommendationEngine",
    "Recommendation",
    "AdSnapshot",
    "AdSetSnapshot",
    "InsightSnapshot",
    "MetaAdsClient",
    "PlatformResponse",
    "ExecutionOrchestrator",
    "ExecutionReport",
]
