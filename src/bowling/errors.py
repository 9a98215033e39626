"""
Error taxonomy for the bowling computation core.

Every core function either returns a wholly new value or raises one of
these; nothing is partially updated before an error is raised.
"""


class BowlingError(Exception):
    """Base class for all core errors."""


class ValidationError(BowlingError):
    """An input value breaks a scoring or money invariant."""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class TieError(BowlingError):
    """No winner can be determined; a tie-broken score must be re-entered."""

    def __init__(self, message, tied_ids=()):
        super().__init__(message)
        self.tied_ids = tuple(tied_ids)


class StructuralError(BowlingError):
    """The requested operation does not fit the bracket or sidepot structure."""


class ConsistencyError(BowlingError):
    """Caller-side bookkeeping is inconsistent (e.g. refunds cannot be allocated)."""
