"""
Webhook signature verification.

Signatures are lowercase hex HMAC-SHA256 digests of the exact request body
bytes. Always verify the bytes captured before any parsing: decoding and
re-serializing JSON changes whitespace and key order and breaks the digest.
"""

import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Optional

from convertos.db.models import DataSourceConnection


def compute_signature(raw: bytes, secret: str) -> str:
    """Return the lowercase hex HMAC-SHA256 of `raw` keyed by `secret`."""
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def _matches(raw: bytes, signature: str, secret: str) -> bool:
    expected = compute_signature(raw, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", errors="replace"))


def verify(
    raw: bytes,
    signature_hex: Optional[str],
    current_secret: Optional[str],
    previous_secret: Optional[str] = None,
) -> bool:
    """
    Check `signature_hex` against the current secret, then the previous one.

    The previous secret is only tried when it is given; callers decide
    whether it is still inside its grace window.
    """
    if not current_secret or not signature_hex:
        return False

    signature = signature_hex.strip().lower()

    if _matches(raw, signature, current_secret):
        return True

    if previous_secret:
        return _matches(raw, signature, previous_secret)

    return False


def previous_secret_in_grace(
    connection: DataSourceConnection,
    now: datetime,
    grace: timedelta,
) -> bool:
    """Durable grace check: previous secret is usable until rotated_at + grace."""
    if not connection.previous_secret or connection.secret_rotated_at is None:
        return False
    return now < connection.secret_rotated_at + grace


def verify_for_connection(
    raw: bytes,
    signature_hex: Optional[str],
    connection: DataSourceConnection,
    now: datetime,
    grace: timedelta,
) -> bool:
    """Verify against a connection, offering the previous secret only inside its grace window."""
    previous = connection.previous_secret if previous_secret_in_grace(connection, now, grace) else None
    return verify(raw, signature_hex, connection.connection_secret, previous)
