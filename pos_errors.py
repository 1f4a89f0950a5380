"""
Error taxonomy and tagged result types shared by the POS sync engines.

Remote Gateway and Local Store failures travel between components as
``Err(error)`` values rather than raised exceptions; the engines unwrap them
and decide whether to continue, retry later, or surface a message.
"""
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar, Union

T = TypeVar("T")

CONNECTIVITY_MESSAGE = "Unable to connect to server. Please check your domain settings."


class ErrorKind(str, Enum):
    CONNECTIVITY = "connectivity"
    NETWORK = "network"
    SERVER = "server"
    DECODE = "decode"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    STORAGE = "storage"
    STOCK_EXCEEDED = "stock_exceeded"
    SYNC_ABORTED = "sync_aborted"


class PosError(Exception):
    kind = ErrorKind.NETWORK

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def user_message(self) -> str:
        return self.message or "An unexpected error occurred"

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.CONNECTIVITY, ErrorKind.NETWORK, ErrorKind.SERVER)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.user_message()}


class ConnectivityError(PosError):
    """Host unreachable or DNS failure; the user should check the domain setting."""
    kind = ErrorKind.CONNECTIVITY

    def user_message(self) -> str:
        return CONNECTIVITY_MESSAGE


class NetworkError(PosError):
    kind = ErrorKind.NETWORK

    def user_message(self) -> str:
        return self.message or "Network error. Please try again."


class ServerError(PosError):
    kind = ErrorKind.SERVER

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code

    def user_message(self) -> str:
        return message_for_status(self.status_code, self.message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data


class DecodeError(PosError):
    kind = ErrorKind.DECODE

    def user_message(self) -> str:
        return f"Unexpected response from server: {self.message}" if self.message else "Unexpected response from server"


class ValidationError(PosError):
    """One or more domain preconditions failed; never retried automatically."""
    kind = ErrorKind.VALIDATION

    def __init__(self, *problems: str):
        self.problems: List[str] = [p for p in problems if p]
        super().__init__("; ".join(self.problems))

    def user_message(self) -> str:
        return self.message or "Invalid input"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["problems"] = list(self.problems)
        return data


class ConfigurationError(PosError):
    kind = ErrorKind.CONFIGURATION


class StorageError(PosError):
    kind = ErrorKind.STORAGE

    def user_message(self) -> str:
        return f"Local storage error: {self.message}" if self.message else "Local storage error"


class StockExceeded(PosError):
    kind = ErrorKind.STOCK_EXCEEDED

    def __init__(self, product_id: int, requested: float, available: float):
        super().__init__(f"Only {available:g} available for product {product_id} (requested {requested:g})")
        self.product_id = product_id
        self.requested = requested
        self.available = available


class SyncAbortedError(PosError):
    """A sync run gave up: failure threshold reached or page ceiling hit."""
    kind = ErrorKind.SYNC_ABORTED

    def __init__(self, message: str, cause: Optional[PosError] = None):
        super().__init__(message)
        self.cause = cause


def message_for_status(status_code: int, fallback: Optional[str] = None) -> str:
    if status_code == 400:
        return "Invalid request. Please check your input."
    if status_code == 401:
        return "Authentication required."
    if status_code == 403:
        return "Access denied."
    if status_code == 404:
        return "Resource not found."
    if 500 <= status_code < 600:
        return "Server error. Please try again later."
    return fallback or f"An error occurred (Code: {status_code})"


# ---------- TAGGED RESULTS ----------
class Ok(Generic[T]):
    __slots__ = ("value",)
    ok = True

    def __init__(self, value: T):
        self.value = value

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Ok) and other.value == self.value


class Err:
    __slots__ = ("error",)
    ok = False

    def __init__(self, error: PosError):
        self.error = error

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Union[Ok, Err]


# ---------- JOB OUTCOMES ----------
class JobStatus(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    SKIPPED = "skipped"


class JobOutcome:
    """What a background sync job reports back to the scheduler."""

    def __init__(self, status: JobStatus, detail: str = "", succeeded: int = 0, failed: int = 0,
                 error: Optional[PosError] = None):
        self.status = status
        self.detail = detail
        self.succeeded = succeeded
        self.failed = failed
        self.error = error

    @classmethod
    def success(cls, detail: str = "", succeeded: int = 0, failed: int = 0) -> "JobOutcome":
        return cls(JobStatus.SUCCESS, detail, succeeded, failed)

    @classmethod
    def retry(cls, detail: str = "", succeeded: int = 0, failed: int = 0,
              error: Optional[PosError] = None) -> "JobOutcome":
        return cls(JobStatus.RETRY, detail, succeeded, failed, error)

    @classmethod
    def skipped(cls, detail: str = "") -> "JobOutcome":
        return cls(JobStatus.SKIPPED, detail)

    def to_dict(self) -> dict:
        data = {"status": self.status.value, "detail": self.detail,
                "succeeded": self.succeeded, "failed": self.failed}
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data

    def __repr__(self) -> str:
        return f"JobOutcome({self.status.value!r}, succeeded={self.succeeded}, failed={self.failed})"
