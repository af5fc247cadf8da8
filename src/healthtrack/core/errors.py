"""Error taxonomy shared by the engine components.

Every engine failure that a caller can act on derives from
``HealthEngineError``. Storage failures (``DatabaseError`` and raw
``sqlite3.Error``) are not part of this hierarchy and propagate unchanged.
"""

from __future__ import annotations


class HealthEngineError(Exception):
    """Base class for engine errors surfaced to callers."""

    code = "engine_error"


class ValidationError(HealthEngineError):
    """Input outside its declared range or enumeration. Rejected before persistence."""

    code = "validation_error"


class InvalidTransitionError(ValidationError):
    """A goal status change the lifecycle does not allow."""

    code = "invalid_transition"


class UnsupportedUnitError(ValidationError):
    """A unit the normalizer cannot convert to the canonical unit."""

    code = "unsupported_unit"


class ConflictError(HealthEngineError):
    """A uniqueness constraint would be violated (e.g. a second active weight goal)."""

    code = "conflict"


class InconsistentReferenceError(HealthEngineError):
    """A dangling reference was found while aggregating. Data-integrity fault."""

    code = "inconsistent_reference"


class MissingInputError(HealthEngineError):
    """A precondition input is absent (e.g. Karvonen without resting heart rate)."""

    code = "missing_input"


class NotFoundError(HealthEngineError):
    """The referenced entity does not exist."""

    code = "not_found"
