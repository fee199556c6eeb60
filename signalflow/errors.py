"""Exception hierarchy for signalflow."""

from __future__ import annotations

from typing import Any, Optional


class SignalflowError(Exception):
    """Base class for all signalflow errors."""


# Schema errors --------------------------------------------------------------
class SchemaError(SignalflowError):
    """A connector schema lookup or definition is unusable."""


class ConnectorNotFoundError(SchemaError):
    pass


class TriggerNotFoundError(SchemaError):
    pass


class ActionNotFoundError(SchemaError):
    pass


class InvalidOperationTypeError(SchemaError):
    pass


class UnsupportedOperationError(SchemaError):
    pass


# Input validation -------------------------------------------------------------
class MissingFieldError(SignalflowError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Missing required field: {key}")
        self.key = key


# Transport errors -------------------------------------------------------------
class TransportError(SignalflowError):
    """The remote operation channel failed."""


class ChannelClosedError(TransportError):
    pass


class RequestTimeoutError(TransportError):
    pass


class RemoteError(SignalflowError):
    """Error response returned by the remote peer."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def __str__(self) -> str:
        return f"{self.message} (code {self.code})"


# Registry / API errors ----------------------------------------------------------
class InvalidParamsError(SignalflowError):
    """Invalid parameters supplied by a caller."""


class WorkflowNotFoundError(SignalflowError):
    pass


class PermissionDeniedError(SignalflowError):
    pass
