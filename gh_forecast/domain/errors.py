"""Errors surfaced to the operator before or during a forecast."""


class ForecastError(Exception):
    """Base class for fatal forecast errors."""
    pass


class ConfigurationError(ForecastError):
    """Raised for invalid operator input (dates, label mappings, limits).

    Always raised before any network access.
    """
    pass


class AuthenticationError(ForecastError):
    """Raised when no GitHub credential can be resolved."""
    pass
