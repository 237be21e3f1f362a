"""ID generators for the types package."""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import datetime, timezone

# Type aliases
SessionId = str
StepId = str


def _generate_event_id() -> str:
    """Generate a globally unique event ID."""
    return str(uuid.uuid4())


def generate_session_id() -> SessionId:
    """Generate a unique session ID.

    Creates IDs in the format: sess-YYYYMMDD-HHMMSS-xxxxxx
    where xxxxxx is a random 6-character alphanumeric suffix. IDs sort
    chronologically, which resume relies on to find the latest session.

    Returns:
        A unique session identifier string.

    Example:
        >>> session_id = generate_session_id()
        >>> session_id  # e.g., "sess-20251208-143022-abc123"
    """
    now = datetime.now(timezone.utc)
    timestamp = now.strftime("%Y%m%d-%H%M%S")
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"sess-{timestamp}-{suffix}"
