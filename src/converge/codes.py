"""Code constants for plans, apply results and validation.

These constants prevent stringly-typed operation and status values and
ensure client code compares against the right codes.
"""

from enum import Enum


class Operation(str, Enum):
    """What a planned action does to a resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class ActionStatus(str, Enum):
    """Outcome of a single action during apply."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # An upstream action failed, was skipped or cancelled
    CANCELLED = "cancelled"  # Never scheduled because the run was cancelled


class ValidationCode(str, Enum):
    """Validation error and warning codes."""

    # Errors (blocking)
    INVALID_STRUCTURE = "INVALID_STRUCTURE"
    DUPLICATE_ADDRESS = "DUPLICATE_ADDRESS"
    UNKNOWN_REFERENCE = "UNKNOWN_REFERENCE"
    MISSING_VARIABLE = "MISSING_VARIABLE"
    UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"
    CYCLE_DETECTED = "CYCLE_DETECTED"

    # Warnings (non-blocking)
    UNUSED_VARIABLE = "UNUSED_VARIABLE"
    REDUNDANT_DEPENDS_ON = "REDUNDANT_DEPENDS_ON"
