"""Exceptions shared across guardian modules."""


class ConfigError(ValueError):
    """Raised when the environment describes an invalid configuration."""
