"""Helpers for Slack Events API callbacks."""
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Requests older than this are treated as replays
MAX_REQUEST_AGE_SECONDS = 60 * 5


def verify_signature(
    signing_secret: str,
    timestamp: str,
    body: str,
    signature: str,
    now: Optional[float] = None
) -> bool:
    """
    Verify the X-Slack-Signature header of an Events API request.

    Args:
        signing_secret: App signing secret
        timestamp: X-Slack-Request-Timestamp header
        body: Raw request body
        signature: X-Slack-Signature header ("v0=<hex>")
        now: Current unix time, for tests

    Returns:
        True if the signature matches and the request is fresh
    """
    if not timestamp or not signature:
        return False

    try:
        request_time = int(timestamp)
    except ValueError:
        return False

    now = time.time() if now is None else now
    if abs(now - request_time) > MAX_REQUEST_AGE_SECONDS:
        logger.warning(f"Rejecting stale Slack request from {request_time}")
        return False

    basestring = f"v0:{timestamp}:{body}".encode('utf-8')
    expected = 'v0=' + hmac.new(
        signing_secret.encode('utf-8'), basestring, hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


def message_from_callback(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract the channel message from an event_callback payload.

    Returns:
        The inner message event, or None for other event types,
        message subtypes other than bot_message, and empty messages
    """
    if payload.get('type') != 'event_callback':
        return None

    event = payload.get('event') or {}
    if event.get('type') != 'message':
        return None

    subtype = event.get('subtype')
    if subtype and subtype != 'bot_message':
        return None

    if not (event.get('text') or '').strip() or not event.get('channel'):
        return None

    return event
