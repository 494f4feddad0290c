"""
Event Ingestor — one inbound webhook request end to end.

    Received → Authenticated → Deduplicated → Stored → Dispatched
             → Processed | ProcessingFailed

The raw event is committed before normalization runs, so a normalization
failure is recorded on the stored row and acknowledged with 200; the row
can be replayed later with `reprocess_failed`. Only failures before the
row is stored answer 500, which makes the sender retry.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from convertos.core.structured_logging import bind_context, webhook_log
from convertos.db.models import WebhookEvent
from convertos.exceptions import NotFoundError, PersistenceError
from convertos.services.connection_registry import ConnectionRegistry
from convertos.services.event_normalizer import EventNormalizer
from convertos.services.signature import verify_for_connection


@dataclass
class IngestResult:
    """HTTP status plus JSON body for the sender."""
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    stage: str = ""  # last state reached, for logs and tests

    @classmethod
    def ok(cls, message: str, event_id: str, stage: str) -> "IngestResult":
        return cls(200, {"success": True, "message": message, "eventId": event_id}, stage)

    @classmethod
    def reject(cls, status_code: int, error: str, stage: str, **extra) -> "IngestResult":
        return cls(status_code, {"error": error, **extra}, stage)


def _decode_body(raw: bytes) -> str:
    """Text form of the body for storage. Not byte-exact for non-UTF-8 input."""
    return raw.decode("utf-8", errors="replace")


class WebhookIngestor:
    """Authenticates, deduplicates, stores and dispatches webhook deliveries."""

    def __init__(
        self,
        db: AsyncSession,
        registry: ConnectionRegistry,
        normalizer: Optional[EventNormalizer] = None,
        grace: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.registry = registry
        self.normalizer = normalizer or EventNormalizer(db)
        self.grace = grace
        self.clock = clock

    async def ingest(
        self,
        connection_header: Optional[str],
        signature: Optional[str],
        raw_body: bytes,
    ) -> IngestResult:
        # ── Received ──
        if not connection_header or not signature:
            return IngestResult.reject(400, "Missing required headers", "received")

        bind_context(connection_id=connection_header)
        connection_pk: Optional[str] = None
        event_id: Optional[str] = None

        try:
            # ── Authenticated ──
            try:
                connection = await self.registry.get_by_external_id(connection_header)
            except NotFoundError:
                webhook_log.warning("Rejected webhook for unknown connection")
                return IngestResult.reject(401, "Invalid connection ID", "authenticated")

            connection_pk = connection.id
            client_id = connection.client_id

            if not connection.is_active:
                webhook_log.warning("Rejected webhook for inactive connection")
                return IngestResult.reject(403, "Connection is not active", "authenticated")

            if not verify_for_connection(raw_body, signature, connection, self.clock(), self.grace):
                await self._record_rejected(client_id, connection_pk, raw_body, signature)
                webhook_log.warning("Rejected webhook with invalid signature")
                return IngestResult.reject(401, "Invalid signature", "authenticated")

            # Bytes are verified; only now is it safe to parse them.
            try:
                payload = json.loads(raw_body)
            except (ValueError, UnicodeDecodeError):
                return IngestResult.reject(400, "Invalid JSON body", "authenticated")
            if not isinstance(payload, dict):
                return IngestResult.reject(400, "Invalid JSON body", "authenticated")

            event_id = payload.get("event_id")
            if not event_id or not isinstance(event_id, str):
                return IngestResult.reject(400, "Missing event_id in payload", "authenticated")

            # ── Deduplicated ──
            existing = await self.db.execute(
                select(WebhookEvent.id).where(WebhookEvent.event_id == event_id)
            )
            if existing.first() is not None:
                webhook_log.info("Duplicate delivery acknowledged", {"event_id": event_id})
                return IngestResult.ok("Event already processed", event_id, "deduplicated")

            # ── Stored ──
            stored_pk = await self._store(client_id, connection_pk, event_id, payload, raw_body, signature)
            if stored_pk is None:
                return IngestResult.ok("Event already processed", event_id, "deduplicated")

        except PersistenceError as e:
            webhook_log.error("Webhook ingestion failed before storage", {"error": e.message})
            await self._note_connection_error(connection_pk, e.message)
            return IngestResult.reject(500, "Internal server error", "received", details=e.message)
        except SQLAlchemyError as e:
            await self.db.rollback()
            webhook_log.error("Webhook ingestion failed before storage", {"error": str(e)})
            await self._note_connection_error(connection_pk, str(e))
            return IngestResult.reject(500, "Internal server error", "received", details=str(e))

        # ── Dispatched → Processed | ProcessingFailed ──
        error = await self._dispatch(stored_pk, client_id, connection_pk, payload)

        if error is None:
            await self._note_connection_seen(connection_pk)
            return IngestResult.ok("Event received and processed", event_id, "processed")

        await self._note_connection_error(connection_pk, error)
        return IngestResult.ok("Event stored; processing failed and can be reprocessed", event_id, "processing_failed")

    async def reprocess_failed(self, connection_pk: Optional[str] = None, limit: int = 100) -> Dict[str, int]:
        """
        Replay stored, authenticated events that never finished processing.
        Processed events are never selected.
        """
        query = (
            select(WebhookEvent.id, WebhookEvent.client_id, WebhookEvent.connection_id, WebhookEvent.raw_payload)
            .where(
                WebhookEvent.processed.is_(False),
                WebhookEvent.signature_valid.is_(True),
                WebhookEvent.event_id.is_not(None),
            )
            .order_by(WebhookEvent.received_at)
            .limit(limit)
        )
        if connection_pk:
            query = query.where(WebhookEvent.connection_id == connection_pk)

        rows = (await self.db.execute(query)).all()
        stats = {"attempted": len(rows), "processed": 0, "failed": 0}

        for pk, client_id, conn_pk, payload in rows:
            error = await self._dispatch(pk, client_id, conn_pk, payload or {})
            stats["processed" if error is None else "failed"] += 1

        webhook_log.info("Reprocessed stored events", stats)
        return stats

    # ── Internals ──────────────────────────────────────────

    async def _store(
        self,
        client_id: str,
        connection_pk: str,
        event_id: str,
        payload: Dict[str, Any],
        raw_body: bytes,
        signature: str,
    ) -> Optional[str]:
        """
        Persist the raw event. Returns its primary key, or None when a
        concurrent delivery of the same event_id won the insert.
        """
        event = WebhookEvent(
            client_id=client_id,
            connection_id=connection_pk,
            event_id=event_id,
            event_type=str(payload.get("event_type") or "unknown"),
            raw_payload=payload,
            raw_body=_decode_body(raw_body),
            signature=signature,
            signature_valid=True,
            processed=False,
            received_at=self.clock(),
        )
        self.db.add(event)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            webhook_log.info("Concurrent duplicate lost the insert race", {"event_id": event_id})
            return None
        webhook_log.debug("Webhook event stored", {"event_id": event_id})
        return event.id

    async def _dispatch(
        self,
        event_pk: str,
        client_id: str,
        connection_pk: str,
        payload: Dict[str, Any],
    ) -> Optional[str]:
        """Normalize one stored event. Returns None on success, else the error message."""
        try:
            outcome = await self.normalizer.normalize(client_id, connection_pk, payload)
            await self.db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_pk)
                .values(processed=True, processed_at=self.clock(), error=None)
            )
            await self.db.commit()
            webhook_log.debug("Webhook event processed", {"event_pk": event_pk, "outcome": outcome})
            return None
        except Exception as e:
            # Discard partial normalization; the stored raw event survives.
            await self.db.rollback()
            message = getattr(e, "message", None) or str(e) or e.__class__.__name__
            webhook_log.error("Webhook processing failed", {"event_pk": event_pk, "error": message})
            try:
                await self.db.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.id == event_pk)
                    .values(error=message, retry_count=WebhookEvent.retry_count + 1)
                )
                await self.db.commit()
            except SQLAlchemyError as record_error:
                await self.db.rollback()
                webhook_log.error("Could not record processing failure", {"error": str(record_error)})
            return message

    async def _record_rejected(self, client_id: str, connection_pk: str, raw_body: bytes, signature: str) -> None:
        """Forensic record of a bad-signature delivery. Never blocks the response."""
        try:
            payload = json.loads(raw_body)
            if not isinstance(payload, dict):
                payload = {"value": payload}
        except (ValueError, UnicodeDecodeError):
            payload = None

        claimed = payload.get("event_id") if payload else None
        self.db.add(WebhookEvent(
            client_id=client_id,
            connection_id=connection_pk,
            event_id=None,
            claimed_event_id=str(claimed)[:255] if claimed else None,
            event_type=str((payload or {}).get("event_type") or "unknown"),
            raw_payload=payload,
            raw_body=_decode_body(raw_body),
            signature=signature[:128],
            signature_valid=False,
            processed=False,
            error="Invalid signature",
            received_at=self.clock(),
        ))
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            webhook_log.error("Failed to record rejected webhook", {"error": str(e)})

    async def _note_connection_seen(self, connection_pk: Optional[str]) -> None:
        if not connection_pk:
            return
        try:
            await self.registry.mark_seen(connection_pk)
        except SQLAlchemyError as e:
            await self.db.rollback()
            webhook_log.warning("Could not update connection last_seen_at", {"error": str(e)})

    async def _note_connection_error(self, connection_pk: Optional[str], message: str) -> None:
        if not connection_pk:
            return
        try:
            await self.registry.mark_error(connection_pk, message)
        except SQLAlchemyError as e:
            await self.db.rollback()
            webhook_log.warning("Could not record connection error", {"error": str(e)})
