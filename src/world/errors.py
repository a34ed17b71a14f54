"""Error conventions for action rejections and fatal state problems.

Rejections are ordinary, recoverable outcomes: the validator returns them
as structured payloads that land in the event log, and the agent may retry
next tick. Exceptions are reserved for misuse of the command surface and for
persisted state that cannot be trusted.

Usage:
    from src.world.errors import rejection, ErrorCode

    return rejection(
        ErrorCode.INSUFFICIENT_QI,
        "insufficient qi: have 0, need 1",
        required=1,
        available=0,
    )
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for rejection classification.

    - VALIDATION: Malformed or unauthenticated action
    - PERMISSION: Zone or ownership rules forbid it
    - RESOURCE: Not enough Qi/ore, or a source is missing/depleted
    - SPATIAL: Target position is illegal
    - SYSTEM: Internal inconsistency
    """

    VALIDATION = "validation"
    PERMISSION = "permission"
    RESOURCE = "resource"
    SPATIAL = "spatial"
    SYSTEM = "system"


class ErrorCode(str, Enum):
    """Specific rejection codes for programmatic handling."""

    # Validation
    AGENT_NOT_FOUND = "agent_not_found"
    AGENT_DEAD = "agent_dead"
    INVALID_SIGNATURE = "invalid_signature"
    STALE_NONCE = "stale_nonce"
    NONCE_GAP = "nonce_gap"
    INVALID_PAYLOAD = "invalid_payload"
    PROGRAM_TOO_LARGE = "program_too_large"

    # Resource
    INSUFFICIENT_QI = "insufficient_qi"
    INSUFFICIENT_ORE = "insufficient_ore"
    NO_SOURCE_IN_RANGE = "no_source_in_range"
    SOURCE_DEPLETED = "source_depleted"
    REPRODUCTION_THRESHOLD = "reproduction_threshold"

    # Spatial
    OUT_OF_BOUNDS = "out_of_bounds"
    MOVE_OUT_OF_RANGE = "move_out_of_range"
    POSITION_OCCUPIED = "position_occupied"
    STRUCTURE_SPACE_OCCUPIED = "structure_space_occupied"
    ZONE_OVERLAP = "zone_overlap"

    # Permission
    ZONE_PERMISSION_DENIED = "zone_permission_denied"
    ZONE_NOT_FOUND = "zone_not_found"
    NOT_ZONE_MEMBER = "not_zone_member"
    ALREADY_ZONE_MEMBER = "already_zone_member"
    NOT_ZONE_CLAIMANT = "not_zone_claimant"


_CATEGORY: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.AGENT_NOT_FOUND: ErrorCategory.VALIDATION,
    ErrorCode.AGENT_DEAD: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_SIGNATURE: ErrorCategory.VALIDATION,
    ErrorCode.STALE_NONCE: ErrorCategory.VALIDATION,
    ErrorCode.NONCE_GAP: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_PAYLOAD: ErrorCategory.VALIDATION,
    ErrorCode.PROGRAM_TOO_LARGE: ErrorCategory.VALIDATION,
    ErrorCode.INSUFFICIENT_QI: ErrorCategory.RESOURCE,
    ErrorCode.INSUFFICIENT_ORE: ErrorCategory.RESOURCE,
    ErrorCode.NO_SOURCE_IN_RANGE: ErrorCategory.RESOURCE,
    ErrorCode.SOURCE_DEPLETED: ErrorCategory.RESOURCE,
    ErrorCode.REPRODUCTION_THRESHOLD: ErrorCategory.RESOURCE,
    ErrorCode.OUT_OF_BOUNDS: ErrorCategory.SPATIAL,
    ErrorCode.MOVE_OUT_OF_RANGE: ErrorCategory.SPATIAL,
    ErrorCode.POSITION_OCCUPIED: ErrorCategory.SPATIAL,
    ErrorCode.STRUCTURE_SPACE_OCCUPIED: ErrorCategory.SPATIAL,
    ErrorCode.ZONE_OVERLAP: ErrorCategory.SPATIAL,
    ErrorCode.ZONE_PERMISSION_DENIED: ErrorCategory.PERMISSION,
    ErrorCode.ZONE_NOT_FOUND: ErrorCategory.PERMISSION,
    ErrorCode.NOT_ZONE_MEMBER: ErrorCategory.PERMISSION,
    ErrorCode.ALREADY_ZONE_MEMBER: ErrorCategory.PERMISSION,
    ErrorCode.NOT_ZONE_CLAIMANT: ErrorCategory.PERMISSION,
}

# Codes an agent can fix by waiting (more Qi, a recharged node, a free cell)
_RETRIABLE: frozenset[ErrorCode] = frozenset({
    ErrorCode.INSUFFICIENT_QI,
    ErrorCode.INSUFFICIENT_ORE,
    ErrorCode.SOURCE_DEPLETED,
    ErrorCode.POSITION_OCCUPIED,
    ErrorCode.REPRODUCTION_THRESHOLD,
})


def category_of(code: ErrorCode) -> ErrorCategory:
    """Category for a rejection code."""
    return _CATEGORY.get(code, ErrorCategory.SYSTEM)


@dataclass
class ErrorResponse:
    """Standardized rejection payload.

    - code: Machine-readable rejection code
    - message: Human-readable message
    - category: Rejection category (validation, permission, etc.)
    - retriable: Whether retrying later can succeed
    - details: Optional additional context
    """

    code: str
    message: str
    category: str
    retriable: bool = False
    details: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for serialization."""
        result: dict[str, object] = {
            "code": self.code,
            "message": self.message,
            "category": self.category,
            "retriable": self.retriable,
        }
        if self.details:
            result["details"] = self.details
        return result


def rejection(code: ErrorCode, message: str, **details: object) -> ErrorResponse:
    """Create a rejection for the given code.

    Args:
        code: Rejection code
        message: Human-readable message
        **details: Additional context (e.g., required=1, available=0)

    Returns:
        ErrorResponse with category and retriable filled in from the code
    """
    return ErrorResponse(
        code=code.value,
        message=message,
        category=category_of(code).value,
        retriable=code in _RETRIABLE,
        details=dict(details) if details else None,
    )


class HarimuError(Exception):
    """Base class for runtime exceptions."""


class StateCorruptionError(HarimuError):
    """Persisted state exists but cannot be parsed or is inconsistent.

    Fatal: callers must refuse to run from it.
    """

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"refusing to load {path}: {reason}; delete it or run `init` to reset"
        )
        self.path = path
        self.reason = reason


class WorldCommandError(HarimuError):
    """A command-surface request cannot be carried out (unknown wallet,
    unknown agent, insufficient wallet balance, bad arguments)."""
