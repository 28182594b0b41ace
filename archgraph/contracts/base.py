"""
Base Contracts and Shared Types

These are the foundational types used across all layers.
All value types here are IMMUTABLE and represent pure data.

BOUNDARY ENFORCEMENT:
=====================
- This module is READ-ONLY from all layers
- Layers may import types but MUST NOT modify this module
- Every failure reason used by the core is enumerated in ErrorCode
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple
from enum import Enum


DEFAULT_WORKSPACE_ID = "default"


def normalize_workspace_id(workspace_id: Optional[str]) -> str:
    """Blank or missing workspace ids collapse to the default workspace."""
    value = (workspace_id or "").strip()
    return value if value else DEFAULT_WORKSPACE_ID


# =============================================================================
# ERROR STATES (Explicit, never silent)
# =============================================================================

class ErrorCode(Enum):
    """
    Explicit error codes for deterministic error handling.
    The value is the reason string surfaced to callers.
    """
    # Payload validation errors
    PAYLOAD_INVALID = "PAYLOAD_INVALID"
    REQUEST_TYPE_INVALID = "REQUEST_TYPE_INVALID"
    FROM_REQUIRED = "FROM_REQUIRED"
    TO_REQUIRED = "TO_REQUIRED"
    SOURCE_INVALID = "SOURCE_INVALID"
    CONFIDENCE_INVALID = "CONFIDENCE_INVALID"
    CONFIDENCE_REQUIRED = "CONFIDENCE_REQUIRED"
    EVIDENCE_REQUIRED = "EVIDENCE_REQUIRED"
    OBJECT_REQUIRED = "OBJECT_REQUIRED"
    PATCH_EMPTY = "PATCH_EMPTY"
    VISIBILITY_INVALID = "VISIBILITY_INVALID"
    STATUS_INVALID = "STATUS_INVALID"

    # State errors
    NOT_FOUND = "NOT_FOUND"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    GENERATION_NOT_FOUND = "GENERATION_NOT_FOUND"

    # Resolution errors
    OBJECT_NOT_FOUND = "OBJECT_NOT_FOUND"

    # Build errors
    BUILD_FAILED = "BUILD_FAILED"

    # Query errors
    QUERY_PARAMS_INVALID = "QUERY_PARAMS_INVALID"
    QUERY_TYPE_UNSUPPORTED = "QUERY_TYPE_UNSUPPORTED"
    QUERY_FAILED = "QUERY_FAILED"


# =============================================================================
# TEMPORAL TYPES (Immutable, explicit semantics)
# =============================================================================

@dataclass(frozen=True)
class Timestamp:
    """
    Immutable timestamp with explicit semantics.
    All timestamps are UTC, never local time.
    """
    value: datetime

    def __post_init__(self):
        if self.value.tzinfo is None:
            object.__setattr__(self, 'value', self.value.replace(tzinfo=timezone.utc))

    @staticmethod
    def now() -> Timestamp:
        return Timestamp(value=datetime.now(timezone.utc))

    @staticmethod
    def from_iso(iso_string: str) -> Timestamp:
        dt = datetime.fromisoformat(iso_string.replace('Z', '+00:00'))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return Timestamp(value=dt)

    def to_iso(self) -> str:
        return self.value.isoformat()


@dataclass(frozen=True)
class TimeRange:
    """Immutable time range for log filtering."""
    start: Timestamp
    end: Timestamp

    def __post_init__(self):
        if self.start.value > self.end.value:
            raise ValueError("TimeRange start must be before or equal to end")

    def contains(self, timestamp: Timestamp) -> bool:
        return self.start.value <= timestamp.value <= self.end.value


@dataclass(frozen=True)
class Error:
    """
    Immutable error representation with full context.
    Errors are data - they can be stored, audited and returned.
    """
    code: ErrorCode
    message: str
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    context: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


# =============================================================================
# EXCEPTIONS (raised by the write path, carried as data by the read path)
# =============================================================================

class ArchGraphError(Exception):
    """
    Base failure of the core.

    str(exc) is the reason code so batch callers can report it verbatim;
    the human readable message lives on .error.message.
    """

    def __init__(self, code: ErrorCode, message: str = "", **context: str):
        self.error = Error(
            code=code,
            message=message or code.value,
            context=tuple((k, str(v)) for k, v in sorted(context.items())),
        )
        super().__init__(code.value)

    @property
    def code(self) -> ErrorCode:
        return self.error.code

    @property
    def reason(self) -> str:
        return self.error.code.value


class PayloadValidationError(ArchGraphError):
    """Missing or invalid payload field. Recoverable, never retried."""


class StateError(ArchGraphError):
    """Request not found or already processed."""


class ResolutionError(ArchGraphError):
    """A URN does not resolve to a known object."""


class BuildError(ArchGraphError):
    """Roll-up computation failed; the prior ACTIVE generation is untouched."""
