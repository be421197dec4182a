"""Tracking references and timestamps."""

import secrets
import string
from datetime import datetime, timezone

_ALPHABET = string.ascii_letters + string.digits
TRACKING_REF_LENGTH = 88


def generate_tracking_ref() -> str:
    """Generate an opaque external-facing transaction reference."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(TRACKING_REF_LENGTH))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
