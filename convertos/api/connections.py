"""Operator endpoints for data source connections."""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from convertos.api.deps import get_ingestor, get_registry
from convertos.config import settings
from convertos.schemas import ReprocessRequest, ReprocessResponse, RotateSecretResponse
from convertos.services.connection_registry import ConnectionRegistry
from convertos.services.webhook_ingestor import WebhookIngestor

router = APIRouter(prefix="/connections", tags=["connections"])


@router.post("/events/reprocess", response_model=ReprocessResponse)
async def reprocess_events(
    body: Optional[ReprocessRequest] = None,
    ingestor: WebhookIngestor = Depends(get_ingestor),
):
    """Retry stored events whose processing failed."""
    body = body or ReprocessRequest()
    stats = await ingestor.reprocess_failed(body.connection_id, body.limit)
    return ReprocessResponse(**stats)


@router.post("/{connection_id}/rotate-secret", response_model=RotateSecretResponse)
async def rotate_secret(
    connection_id: str,
    force: bool = Query(False, description="Rotate even while a previous secret is in its grace window"),
    registry: ConnectionRegistry = Depends(get_registry),
):
    """Issue a new secret. The response is the only time it is ever shown."""
    result = await registry.rotate_secret(connection_id, force=force)
    return result.to_dict()


@router.post("/{connection_id}/test")
async def test_connection(
    connection_id: str,
    registry: ConnectionRegistry = Depends(get_registry),
):
    """Send a signed test.ping to the connection's own webhook URL."""
    return await registry.send_test_ping(
        connection_id,
        signature_header=settings.webhook_signature_header,
        connection_header=settings.webhook_connection_header,
    )


@router.get("/{connection_id}/events")
async def list_events(
    connection_id: str,
    limit: int = Query(50, ge=1, le=500),
    registry: ConnectionRegistry = Depends(get_registry),
):
    events = await registry.list_events(connection_id, limit=limit)
    return {"events": events, "count": len(events)}
