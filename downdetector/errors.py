from __future__ import annotations


class DowndetectorError(Exception):
    pass


class ConfigError(DowndetectorError):
    """Raised at startup when the configuration cannot be used."""


class NotifyError(DowndetectorError):
    """Raised when a notification could not be delivered to the webhook."""
