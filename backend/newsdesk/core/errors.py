"""
Error taxonomy for the collection and digest pipelines.

Per-item and per-source failures are recovered locally (skip and continue).
Only repeated delivery failure and persistence-layer unavailability are
escalated to the operator.
"""
from typing import Optional


class NewsdeskError(Exception):
    """Base class for all pipeline errors."""


class SourceUnavailable(NewsdeskError):
    """A connector timed out or hit a transport error."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


class MalformedItem(NewsdeskError):
    """The normalizer rejected a raw item."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


class EnrichmentFailed(NewsdeskError):
    """The AI-summarization collaborator timed out or returned garbage."""


class PersistenceConflict(NewsdeskError):
    """Two writers raced on one fingerprint. Resolved by merging."""

    def __init__(self, fingerprint: str):
        self.fingerprint = fingerprint
        super().__init__(f"conflicting write for {fingerprint}")


class PersistenceUnavailable(NewsdeskError):
    """The document store could not be reached within its timeout."""


class DeliveryFailed(NewsdeskError):
    """The transport refused a digest after all retry attempts."""

    def __init__(self, digest_key: str, reason: str, attempts: Optional[int] = None):
        self.digest_key = digest_key
        self.reason = reason
        self.attempts = attempts
        super().__init__(f"{digest_key}: {reason}")


class ScheduleCatchupAmbiguity(NewsdeskError):
    """More than one slot was missed while the process was down.

    Never raised; instances are logged as warnings when the scheduler
    decides to run only the latest missed slot.
    """

    def __init__(self, kind: str, missed: int):
        self.kind = kind
        self.missed = missed
        super().__init__(f"{kind}: {missed} slots missed, running only the latest")
