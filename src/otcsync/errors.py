from __future__ import annotations

from enum import StrEnum

import httpx


class ConfigurationError(RuntimeError):
    """Raised when the process cannot start with the provided configuration."""


class RpcErrorKind(StrEnum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    CLIENT = "client"
    RPC = "rpc"


class RpcError(RuntimeError):
    def __init__(
        self,
        *,
        kind: RpcErrorKind,
        message: str,
        status_code: int | None = None,
        rpc_code: int | None = None,
        retry_after: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.rpc_code = rpc_code
        self.retry_after = retry_after


class DecodeError(ValueError):
    pass


class AccountNotFoundError(LookupError):
    def __init__(self, address: str) -> None:
        super().__init__(f"account not found: {address}")
        self.address = address


class FinalizationTimeoutError(TimeoutError):
    def __init__(self, *, computation_offset: int, timeout_seconds: float) -> None:
        super().__init__(
            f"computation {computation_offset} not finalized within {timeout_seconds:.1f}s"
        )
        self.computation_offset = computation_offset
        self.timeout_seconds = timeout_seconds


class ErrorCategory(StrEnum):
    TRANSIENT = "transient"
    RATE_LIMIT = "rate_limit"
    UNCERTAIN = "uncertain"
    REJECT = "reject"
    FATAL = "fatal"


def classify_rpc_error(exc: Exception) -> ErrorCategory:
    if isinstance(exc, RpcError):
        if exc.kind is RpcErrorKind.RATE_LIMIT:
            return ErrorCategory.RATE_LIMIT
        if exc.kind in {RpcErrorKind.NETWORK, RpcErrorKind.SERVER}:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.REJECT
    if isinstance(exc, FinalizationTimeoutError):
        return ErrorCategory.UNCERTAIN
    if isinstance(exc, httpx.TimeoutException):
        return ErrorCategory.UNCERTAIN
    if isinstance(exc, httpx.TransportError):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, TimeoutError):
        return ErrorCategory.UNCERTAIN
    return ErrorCategory.FATAL
