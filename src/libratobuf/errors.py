"""Exception types for libratobuf.

Configuration and data errors are raised synchronously to the caller.
Transport errors are contained by the flush cycle and only logged.
"""

from __future__ import annotations

from typing import Any


class LibratoBufError(Exception):
    """Base class for all libratobuf errors."""


class ConfigurationError(LibratoBufError, ValueError):
    """Invalid configuration or misuse of a declared metric.

    Raised for unknown aggregation functions, bad option values, missing
    transport credentials and incrementing a metric that does not sum.
    """


class DataError(LibratoBufError, ValueError):
    """A payload for the backend could not be built."""


class TransportError(LibratoBufError):
    """Submission to the metrics backend failed.

    Attributes:
        status_code: HTTP status of the response, if one was received.
        detail: Structured error body returned by the backend, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        detail: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail

    def describe(self) -> str:
        """Render the most useful description of the failure."""
        if isinstance(self.detail, dict):
            errors = self.detail.get("errors")
            if isinstance(errors, dict) and errors.get("params"):
                return f"{errors['params']}"
        if self.detail:
            return f"{self}: {self.detail}"
        return str(self)
