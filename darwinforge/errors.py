"""Exceptions shared across Darwin Forge modules."""


class ConfigValidationError(ValueError):
    """Raised when configuration values are malformed or out of range."""
