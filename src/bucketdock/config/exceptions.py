"""Custom exceptions for configuration management."""


class ConfigError(Exception):
    """Raised when configuration data cannot be processed."""


class UnknownProfileError(ConfigError):
    """Raised when a named storage profile is not defined."""
