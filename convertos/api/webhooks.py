"""
Inbound webhook endpoint for WordPress connections.

The body is read as raw bytes and handed to the ingestor untouched; the
signature covers those exact bytes.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from convertos.api.deps import get_ingestor
from convertos.config import settings
from convertos.core.structured_logging import bind_context, generate_request_id
from convertos.services.webhook_ingestor import WebhookIngestor

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/wordpress")
async def wordpress_webhook(request: Request, ingestor: WebhookIngestor = Depends(get_ingestor)):
    """
    Receive a signed event from the WordPress plugin.

    POST /api/webhooks/wordpress
    X-ConvertOS-Connection-Id: conn_...
    X-ConvertOS-Signature: <hex hmac-sha256 of body>
    {"event_id": "evt_1", "event_type": "order.paid", "data": {...}, "timestamp": "..."}
    """
    bind_context(request_id=generate_request_id())
    raw_body = await request.body()

    result = await ingestor.ingest(
        request.headers.get(settings.webhook_connection_header),
        request.headers.get(settings.webhook_signature_header),
        raw_body,
    )
    return JSONResponse(status_code=result.status_code, content=result.body)
