"""Exceptions raised by the gamification core."""


class GamificationError(Exception):
    """Base class for gamification errors."""


class ValidationError(GamificationError, ValueError):
    """Raised when an operation receives input outside its contract."""


class NotFoundError(GamificationError, LookupError):
    """Raised when a referenced record does not exist."""
