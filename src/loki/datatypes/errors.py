"""
Error kinds raised by the feature engines and the state store.

Command handlers catch :class:`LokiError` and show ``str(exc)`` to the user;
the scheduler logs them and keeps running.
"""

from __future__ import annotations


class LokiError(Exception):
    """Base class for every error surfaced by Loki's feature core."""


class NotConfigured(LokiError):
    """The operation needs a channel or pool that has not been set yet."""


class PermissionDenied(LokiError):
    """The platform, or the manager restriction, refused the operation."""


class PersistenceFailure(LokiError):
    """Reading or writing durable state failed; state stays at the last durable value."""


class NetworkTransient(LokiError):
    """A platform call failed after its retries were exhausted."""


class InvalidInput(LokiError):
    """User input could not be used, e.g. an unknown scoreboard name."""
