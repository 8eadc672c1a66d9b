"""
Error taxonomy and the Result type used at the network boundary.

Expected failures (a pull that times out, a rejected credential) travel as
`Result.err` values so that callers decide explicitly whether to keep showing
last-known data. Only configuration mistakes and auth rejection are raised.
"""

from typing import Generic, TypeVar


class VitalSyncError(Exception):
    """Base class for engine errors."""


class PullError(VitalSyncError):
    """A pull request failed for a transient reason (transport error, 5xx, bad body)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(VitalSyncError):
    """The server rejected the credential. Fatal for the current session."""


class ReconnectExhaustedError(VitalSyncError):
    """The connection supervisor gave up after the configured number of attempts."""


class MalformedEventError(VitalSyncError):
    """A push or pull payload lacked the identity needed to route it."""


ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    When to use: network pulls and intents, where failure is a normal outcome
    and the caller must choose between stale data and a retry.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error
