"""
Error types raised inside the core. None of them reach UI code.
"""

from __future__ import annotations


class TransportError(Exception):
    """The backend could not be reached or did not answer in time."""


class MalformedEvent(ValueError):
    """A push frame could not be decoded into an event record."""


class PersistenceError(OSError):
    """A state file could not be written."""
