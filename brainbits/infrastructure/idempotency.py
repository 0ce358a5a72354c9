"""
Deterministic idempotency keys for outbound sends.

The same logical send always produces the same key. De-duplication happens
in two places that both survive process restarts: the provider (Idempotency-Key
header) and the UNIQUE constraint on email_sends.idempotency_key.
"""

from __future__ import annotations

from hashlib import sha256

from brainbits.config import IDEMPOTENCY_KEY_MAX_LENGTH
from brainbits.observability.telemetry import counter, log_event


def cap_key(key: str, max_length: int = IDEMPOTENCY_KEY_MAX_LENGTH) -> str:
    """
    Bound a key's length without losing uniqueness.

    Over-long keys keep a prefix and end with a short sha256 of the full key.
    """
    if len(key) <= max_length:
        return key
    digest = sha256(key.encode("utf-8")).hexdigest()[:16]
    counter("idempotency.key_truncated")
    log_event("idempotency.key_truncated", length=len(key))
    return f"{key[: max_length - len(digest) - 1]}-{digest}"


def sequence_key(sequence_name: str, user_id: str, step: int) -> str:
    """Key for one drip-sequence step sent to one user. Raises ValueError on empty ids."""
    missing = [
        name for name, val in (("sequence_name", sequence_name), ("user_id", user_id)) if not val
    ]
    if missing:
        raise ValueError(f"sequence idempotency key requires: {', '.join(missing)}")
    name = getattr(sequence_name, "value", sequence_name)
    return cap_key(f"sequence:{name}:{user_id}:{step}")


def digest_key(digest_id: int) -> str:
    """Key for sending one stored digest."""
    return cap_key(f"note-digest-{digest_id}")
