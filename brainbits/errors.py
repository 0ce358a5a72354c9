"""
Exception hierarchy for Brain Bits jobs.

Rejections, skips and resolver decisions are normal outcomes and are returned
as values. Only faults are raised.
"""

from __future__ import annotations


class BrainBitsError(Exception):
    """Base exception for Brain Bits errors."""

    pass


class ConsistencyError(BrainBitsError):
    """Stored state contradicts itself (e.g. a selected document without a content hash)."""

    def __init__(self, message: str, code: str = "consistency_fault"):
        super().__init__(message)
        self.code = code


class DeliveryConfigError(BrainBitsError):
    """Email delivery cannot run at all (missing API key or sender)."""

    pass


class WebhookVerificationError(BrainBitsError):
    """Inbound provider webhook failed signature or timestamp checks."""

    pass
