"""Notification validation and parsing."""

from __future__ import annotations

import hmac
from typing import Any, Mapping

from mlagent.webhooks.models import WebhookEvent

REQUIRED_FIELDS = ("topic", "resource", "user_id")


class InvalidNotification(ValueError):
    """The payload is not a usable Mercado Livre notification."""


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

def validate_generic_secret(provided: str, configured: str) -> bool:
    """Validate a shared secret via constant-time comparison.

    Returns False if no secret is configured (rejects unauthenticated requests).
    """
    if not configured:
        return False
    if not provided:
        return False
    return hmac.compare_digest(provided, configured)


def get_client_ip(
    headers: Mapping[str, str], remote: str | None, trust_proxy: bool = True
) -> str | None:
    """Real client address, honouring the usual reverse-proxy headers.

    With ``trust_proxy`` off the headers are ignored and the socket peer is
    used, so a client reaching the server directly cannot spoof its address.
    """
    if not trust_proxy:
        return remote
    forwarded_for = headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        return first or None
    for header in ("X-Real-IP", "CF-Connecting-IP"):
        if headers.get(header):
            return headers[header]
    return remote


def validate_source_ip(ip: str | None, allowed: list[str]) -> bool:
    """An empty allow-list accepts every address."""
    if not allowed:
        return True
    if not ip:
        return False
    return ip.removeprefix("::ffff:") in allowed


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_notification(payload: Any) -> WebhookEvent:
    if not isinstance(payload, dict):
        raise InvalidNotification("Payload must be a JSON object")
    missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
    if missing:
        raise InvalidNotification(f"Missing required fields: {', '.join(missing)}")

    try:
        attempts = int(payload.get("attempts") or 0)
    except (TypeError, ValueError):
        attempts = 0

    return WebhookEvent(
        topic=str(payload["topic"]),
        resource=str(payload["resource"]),
        user_id=str(payload["user_id"]),
        application_id=str(payload.get("application_id") or ""),
        attempts=attempts,
        sent=str(payload.get("sent") or ""),
    )
