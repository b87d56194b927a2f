# shellsense/utils/errors.py
from __future__ import annotations

from typing import Optional


class ShellSenseError(Exception):
    """Base class for every error raised by shellsense."""


class CaptureGap(ShellSenseError):
    """A chunk stream for one command is missing indices or repeats one.

    Reported (logged) only; analysis carries on with whatever was captured.
    """

    def __init__(self, command_id: str, stream: str, expected: int, got: int):
        self.command_id = command_id
        self.stream = stream
        self.expected = expected
        self.got = got
        super().__init__(
            f"capture gap on {command_id}/{stream}: expected chunk {expected}, got {got}"
        )


class StoreUnavailable(ShellSenseError):
    """The event store's backing medium could not be reached."""


class InvalidEvent(ShellSenseError, ValueError):
    """An event violates the append-only or reference rules of the store."""


class SanitizationFailure(ShellSenseError):
    """A detector blew up while scanning a field."""

    def __init__(self, field: str, reason: str):
        self.field = field
        super().__init__(f"sanitization failed for {field}: {reason}")


class ProviderUnavailable(ShellSenseError):
    """The provider cannot (or may not) be asked right now."""


class ProviderTimeout(ShellSenseError):
    """The provider did not answer within the configured timeout."""


class ProviderError(ShellSenseError):
    """The provider answered with something unusable."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ConfigInvalid(ShellSenseError):
    """Configuration is unknown or malformed."""
