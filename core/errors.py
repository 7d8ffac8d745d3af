"""Relay exceptions raised at submission time."""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base class for errors surfaced to the submitting caller."""

    def __init__(self, message: str, kind: str = "", fields: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.fields = dict(fields or {})


class UnknownWorkKind(RelayError):
    def __init__(self, kind: str):
        super().__init__(f"Unknown work kind '{kind}'", kind=kind)


class ValidationFailed(RelayError):
    """A required field was missing or blank. Nothing was broadcast."""


class NoSubscribers(RelayError):
    """The broadcast reached zero agents, so nothing will ever report back."""
