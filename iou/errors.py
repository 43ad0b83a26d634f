"""
Error taxonomy.

Only ValidationError and NotFound are surfaced to callers. InvalidTransition
is a ValidationError: a request for a state change the lifecycle does not
allow. The remaining classes belong to the inference layer: they are
raised and caught internally, logged, and recorded in RuleExecution or
the audit log.
"""

from typing import Any, Optional


class IouError(Exception):
    """Base class for all engine errors."""


class ValidationError(IouError):
    """Malformed input to a create/update call. Raised before any write."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(f"{field}: {message}" if field else message)


class NotFound(IouError):
    """A referenced record does not exist."""

    def __init__(self, kind: str, record_id: Any):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class InvalidTransition(ValidationError):
    """A lifecycle transition that the state machine does not allow."""

    def __init__(self, kind: str, from_state: str, to_state: str):
        self.kind = kind
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid {kind} transition: {from_state} -> {to_state}")


class ExtractionSkipped(IouError):
    """Content cannot be processed as text. Results in zero candidates."""

    def __init__(self, mime_type: Optional[str]):
        self.mime_type = mime_type
        super().__init__(f"Unsupported content type for extraction: {mime_type}")


class RuleFault(IouError):
    """A rule predicate could not be evaluated."""

    def __init__(self, message: str, node: Optional[str] = None):
        self.node = node
        super().__init__(f"{message} (at {node})" if node else message)


class ResolutionConflict(IouError):
    """Two entities claim the same canonical key."""

    def __init__(self, key: str, winner_id: Any, loser_id: Any):
        self.key = key
        self.winner_id = winner_id
        self.loser_id = loser_id
        super().__init__(f"Canonical key {key!r} claimed by {winner_id} and {loser_id}")


class DetectionBudgetExceeded(IouError):
    """Community detection ran out of merges or time."""

    def __init__(self, merges: int, elapsed_seconds: float):
        self.merges = merges
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            f"Detection budget exhausted after {merges} merges in {elapsed_seconds:.2f}s"
        )


class DetectionCancelled(IouError):
    """A detection run was cancelled before it committed."""
