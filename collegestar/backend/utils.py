import hashlib
import json
import uuid
from datetime import datetime, UTC
from typing import Any, List

def make_id(prefix: str) -> str:
    """Generate a unique ID with a given prefix."""
    return f"{prefix}_{uuid.uuid4()}"

def time_now() -> str:
    """Return the current time in ISO format (UTC, no microseconds)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat()

def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()

def strip_bearer(token: str) -> str:
    if token.startswith("Bearer "):
        return token[7:]
    return token

def parse_tags(raw: Any) -> List[str]:
    """
    Normalise tags sent by a client.

    Accepts a list, a JSON array string or a comma-separated string and
    returns the stripped, non-empty entries in their original order.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                raise ValueError("Tags must be a JSON array or comma-separated list")
        else:
            raw = text.split(",")
    if not isinstance(raw, list):
        raise ValueError("Tags must be a JSON array or comma-separated list")
    return [str(tag).strip() for tag in raw if str(tag).strip()]
