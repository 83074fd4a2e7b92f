from __future__ import annotations

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    ENDPOINT_UNREACHABLE = "ENDPOINT_UNREACHABLE"
    ENDPOINT_ERROR_4XX = "ENDPOINT_ERROR_4XX"
    ENDPOINT_ERROR_5XX = "ENDPOINT_ERROR_5XX"
    LOCAL_ENGINE_NOT_FOUND = "LOCAL_ENGINE_NOT_FOUND"
    LOCAL_ENGINE_TIMEOUT = "LOCAL_ENGINE_TIMEOUT"
    PLUGIN_EXECUTION_ERROR = "PLUGIN_EXECUTION_ERROR"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.ENDPOINT_ERROR_5XX,
        ErrorKind.ENDPOINT_UNREACHABLE,
        ErrorKind.LOCAL_ENGINE_TIMEOUT,
    }
)

RECOVERY_HINTS: Dict[ErrorKind, str] = {
    ErrorKind.FILE_NOT_FOUND: "Verify the image file exists and the path is correct.",
    ErrorKind.ENDPOINT_UNREACHABLE: (
        "Check your network connection and verify the endpoint URL is correct."
    ),
    ErrorKind.ENDPOINT_ERROR_4XX: "Check the request parameters and ensure the model ID is valid.",
    ErrorKind.ENDPOINT_ERROR_5XX: "The server is experiencing issues. Please try again later.",
    ErrorKind.LOCAL_ENGINE_NOT_FOUND: (
        "Ensure the local analysis binary is installed and available in your PATH, "
        "or configure the correct binary path in settings."
    ),
    ErrorKind.LOCAL_ENGINE_TIMEOUT: "Try analyzing a smaller image or increase the timeout setting.",
    ErrorKind.PLUGIN_EXECUTION_ERROR: "Check the plugin output log and fix or disable the failing plugin.",
}


@dataclass(frozen=True)
class ErrorDetails:
    endpoint_url: Optional[str] = None
    http_status: Optional[int] = None
    model_id: Optional[str] = None
    plugin_id: Optional[str] = None
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class AnalysisError(Exception):
    """
    The single failure surface of routing and both backends.

    kind is one of the closed ErrorKind values; retryable defaults to the
    policy table but callers may override it (the cloud adapter clears it
    once its own retries are exhausted).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[ErrorDetails] = None,
        *,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.details = details or ErrorDetails()
        self.recovery_hint = RECOVERY_HINTS[self.kind]
        self.retryable = self.kind in RETRYABLE_KINDS if retryable is None else retryable

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"AnalysisError(kind={self.kind.value!r}, message={self.message!r}, retryable={self.retryable})"

    def with_message(self, message: str, *, retryable: Optional[bool] = None) -> "AnalysisError":
        err = AnalysisError(
            self.kind,
            message,
            self.details,
            retryable=self.retryable if retryable is None else retryable,
        )
        err.__cause__ = self.__cause__
        return err

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.kind.value,
            "message": self.message,
            "recoveryHint": self.recovery_hint,
            "retryable": self.retryable,
        }
        details = self.details.to_dict()
        if details:
            payload["details"] = details
        return payload
