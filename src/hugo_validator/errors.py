"""
Exception types.
"""


class HugoValidatorError(Exception):
    """Base class for validator errors."""


class ConfigError(HugoValidatorError):
    """Invalid configuration value."""
