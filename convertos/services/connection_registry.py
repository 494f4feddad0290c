"""
Connection Registry — credential and status lookup for data source
connections, secret rotation with a grace window, and the operator
helpers around a connection (event listing, test ping).

Usage:
    registry = ConnectionRegistry(db, grace=timedelta(hours=24))
    connection = await registry.get_by_external_id("conn_ab12...")
    result = await registry.rotate_secret(connection.id)
    print(result.new_secret)  # shown once, never retrievable again
"""

import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from convertos.core.structured_logging import registry_log
from convertos.db.models import Client, DataSourceConnection, WebhookEvent
from convertos.exceptions import ConflictError, NotFoundError, PersistenceError, ValidationError
from convertos.services.signature import compute_signature, previous_secret_in_grace


def generate_secret() -> str:
    """Opaque 32-byte hex secret."""
    return secrets.token_hex(32)


@dataclass
class RotationResult:
    """Outcome of a rotation. `new_secret` is the only place the secret is ever returned."""
    connection_id: str
    new_secret: str
    rotated_at: datetime
    previous_valid_until: datetime
    dropped_secret_in_grace: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "newSecret": self.new_secret,
            "previousSecretValidUntil": self.previous_valid_until.isoformat(),
            "message": (
                f"Secret rotated. Previous secret valid until "
                f"{self.previous_valid_until.isoformat()}."
            ),
        }


class ConnectionRegistry:
    """
    Data source connections and their credentials.

    All reads go through the store; any SQLAlchemy failure surfaces as
    PersistenceError so the webhook endpoint can answer 500 and let the
    sender retry.
    """

    def __init__(
        self,
        db: AsyncSession,
        grace: timedelta = timedelta(hours=24),
        http_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = db
        self.grace = grace
        self.http_timeout = http_timeout
        self._transport = transport

    # ── Lookup ─────────────────────────────────────────────

    async def get_by_external_id(self, connection_id: str) -> DataSourceConnection:
        try:
            result = await self.db.execute(
                select(DataSourceConnection).where(DataSourceConnection.connection_id == connection_id)
            )
            connection = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Connection registry unavailable: {e}") from e

        if connection is None:
            raise NotFoundError("Invalid connection ID")
        return connection

    async def get(self, id: str) -> DataSourceConnection:
        try:
            connection = await self.db.get(DataSourceConnection, id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Connection registry unavailable: {e}") from e
        if connection is None:
            raise NotFoundError("Connection not found")
        return connection

    # ── Bootstrap ──────────────────────────────────────────

    async def create_connection(
        self,
        client_id: str,
        name: str,
        webhook_url: Optional[str] = None,
        type: str = "wordpress",
    ) -> tuple[DataSourceConnection, str]:
        """Create an active connection. Returns it together with its initial secret."""
        client = await self.db.get(Client, client_id)
        if client is None:
            raise NotFoundError(f"Client {client_id} not found")

        secret = generate_secret()
        connection = DataSourceConnection(
            client_id=client_id,
            type=type,
            name=name,
            connection_id=f"conn_{uuid.uuid4().hex}",
            connection_secret=secret,
            webhook_url=webhook_url,
        )
        self.db.add(connection)
        await self.db.commit()
        await self.db.refresh(connection)
        registry_log.info("Connection created", {"connection_id": connection.connection_id})
        return connection, secret

    # ── Rotation ───────────────────────────────────────────

    async def rotate_secret(self, id: str, *, force: bool = False, now: Optional[datetime] = None) -> RotationResult:
        """
        Move the current secret to `previous_secret` and issue a new one.

        A rotation while an earlier previous secret is still inside its
        grace window would silently invalidate that secret for in-flight
        retries, so it is refused unless `force` is set.
        """
        now = now or datetime.utcnow()
        connection = await self.get(id)

        if connection.type != "wordpress":
            raise ValidationError("Secret rotation only supported for WordPress connections")

        dropped = previous_secret_in_grace(connection, now, self.grace)
        if dropped and not force:
            valid_until = connection.secret_rotated_at + self.grace
            raise ConflictError(
                "A previous secret is still inside its grace window",
                context={"previousSecretValidUntil": valid_until.isoformat()},
            )
        if dropped:
            registry_log.warning(
                "Forced rotation dropped a previous secret still in its grace window",
                {"connection_id": connection.connection_id},
            )

        new_secret = generate_secret()
        connection.previous_secret = connection.connection_secret
        connection.connection_secret = new_secret
        connection.secret_rotated_at = now
        await self.db.commit()

        registry_log.info("Secret rotated", {"connection_id": connection.connection_id})
        return RotationResult(
            connection_id=connection.id,
            new_secret=new_secret,
            rotated_at=now,
            previous_valid_until=now + self.grace,
            dropped_secret_in_grace=dropped,
        )

    async def expire_previous_secrets(self, now: Optional[datetime] = None) -> int:
        """
        Best-effort cleanup of previous secrets past their grace window.
        Verification never relies on this having run.
        """
        now = now or datetime.utcnow()
        result = await self.db.execute(
            update(DataSourceConnection)
            .where(
                DataSourceConnection.previous_secret.is_not(None),
                DataSourceConnection.secret_rotated_at <= now - self.grace,
            )
            .values(previous_secret=None)
        )
        await self.db.commit()
        return result.rowcount or 0

    # ── Observability ──────────────────────────────────────

    async def mark_seen(self, id: str) -> None:
        await self.db.execute(
            update(DataSourceConnection)
            .where(DataSourceConnection.id == id)
            .values(last_seen_at=datetime.utcnow(), last_error=None, last_error_at=None)
        )
        await self.db.commit()

    async def mark_error(self, id: str, message: str) -> None:
        await self.db.execute(
            update(DataSourceConnection)
            .where(DataSourceConnection.id == id)
            .values(last_error=message[:2000], last_error_at=datetime.utcnow())
        )
        await self.db.commit()

    async def list_events(self, id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent webhook events for a connection, newest first."""
        await self.get(id)
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.connection_id == id)
            .order_by(WebhookEvent.received_at.desc())
            .limit(limit)
        )
        return [
            {
                "id": e.id,
                "eventId": e.event_id or e.claimed_event_id,
                "eventType": e.event_type,
                "signatureValid": e.signature_valid,
                "processed": e.processed,
                "processedAt": e.processed_at.isoformat() if e.processed_at else None,
                "error": e.error,
                "retryCount": e.retry_count,
                "receivedAt": e.received_at.isoformat() if e.received_at else None,
            }
            for e in result.scalars().all()
        ]

    # ── Test ping ──────────────────────────────────────────

    async def send_test_ping(self, id: str, signature_header: str, connection_header: str) -> Dict[str, Any]:
        """
        Sign a `test.ping` event with the current secret and POST it to the
        connection's webhook URL. The bytes that are signed are the bytes sent.
        """
        connection = await self.get(id)
        if connection.type != "wordpress":
            raise ValidationError("Test endpoint only supported for WordPress connections")
        if not connection.webhook_url or not connection.connection_secret:
            raise ValidationError("Connection not fully configured")

        event_id = str(uuid.uuid4())
        payload = {
            "event_id": event_id,
            "event_type": "test.ping",
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "data": {"message": "Test ping from ConvertOS", "test": True},
        }
        body = json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            connection_header: connection.connection_id,
            signature_header: compute_signature(body, connection.connection_secret),
        }

        try:
            async with httpx.AsyncClient(timeout=self.http_timeout, transport=self._transport) as client:
                response = await client.post(connection.webhook_url, content=body, headers=headers)
        except httpx.HTTPError as e:
            registry_log.warning("Test ping failed", {"connection_id": connection.connection_id, "error": str(e)})
            return {
                "success": False,
                "message": f"Test ping could not be delivered: {e}",
                "eventId": event_id,
            }

        try:
            response_json = response.json()
        except ValueError:
            response_json = {"raw": response.text}

        if response.is_success:
            return {
                "success": True,
                "message": "Test ping sent and received successfully",
                "eventId": event_id,
                "response": response_json,
            }
        return {
            "success": False,
            "message": "Test ping sent but webhook returned error",
            "eventId": event_id,
            "status": response.status_code,
            "response": response_json,
        }
