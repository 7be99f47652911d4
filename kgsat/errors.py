"""
kgsat Errors
============
Store failures propagate to the caller. Search and extraction failures are
AdapterFailure. The saturation loop only raises SaturationError, for steps
outside the per-entity lookup.
"""


class KGError(Exception):
    """Base for every error raised by kgsat."""


class NotFound(KGError):
    """A referenced document, entity or relation id does not exist."""


class NotPersisted(KGError):
    """A write produced no row."""


class ConstraintViolation(KGError):
    """A relation references an entity that does not exist."""


class AdapterFailure(KGError):
    """External search or extraction failed, timed out, or broke its schema."""


class SaturationError(KGError):
    """A saturation step failed. Names the step and the iteration."""

    def __init__(self, operation: str, iteration: int, cause: Exception):
        self.operation = operation
        self.iteration = iteration
        self.cause = cause
        super().__init__(
            f"saturation {operation} failed in iteration {iteration}: {cause}"
        )
