"""
Error taxonomy for KeyGate
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Every failure a caller can observe"""
    INVALID_KEY = "InvalidKey"
    REVOKED = "Revoked"
    EXPIRED = "Expired"
    QUOTA_EXCEEDED = "QuotaExceeded"
    WRONG_PAYLOAD = "WrongPayload"
    DEVICE_MISMATCH = "DeviceMismatch"
    PAYLOAD_NOT_FOUND = "PayloadNotFound"
    RATE_LIMITED = "RateLimited"
    UNAUTHORIZED = "Unauthorized"
    MALFORMED_REQUEST = "MalformedRequest"
    STORAGE_UNAVAILABLE = "StorageUnavailable"


# HTTP status classification for each kind
STATUS_CODES = {
    ErrorKind.INVALID_KEY: 404,
    ErrorKind.PAYLOAD_NOT_FOUND: 404,
    ErrorKind.REVOKED: 403,
    ErrorKind.EXPIRED: 403,
    ErrorKind.QUOTA_EXCEEDED: 403,
    ErrorKind.WRONG_PAYLOAD: 403,
    ErrorKind.DEVICE_MISMATCH: 403,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.MALFORMED_REQUEST: 400,
    ErrorKind.STORAGE_UNAVAILABLE: 503,
}

# Human-readable messages shown to executors
MESSAGES = {
    ErrorKind.INVALID_KEY: "Invalid key",
    ErrorKind.REVOKED: "Key has been revoked",
    ErrorKind.EXPIRED: "Key has expired",
    ErrorKind.QUOTA_EXCEEDED: "Key has reached its maximum uses",
    ErrorKind.WRONG_PAYLOAD: "Key is not valid for this script",
    ErrorKind.DEVICE_MISMATCH: "Key is bound to another device",
    ErrorKind.PAYLOAD_NOT_FOUND: "Script not found on server",
    ErrorKind.RATE_LIMITED: "Too many requests",
    ErrorKind.UNAUTHORIZED: "Unauthorized",
    ErrorKind.MALFORMED_REQUEST: "Missing required fields",
    ErrorKind.STORAGE_UNAVAILABLE: "Service temporarily unavailable, retry later",
}


def status_for(kind: ErrorKind) -> int:
    """Map an error kind to its HTTP status code"""
    return STATUS_CODES.get(kind, 500)


class KeyGateError(RuntimeError):
    """Base class for errors carrying an ErrorKind"""

    kind: ErrorKind = ErrorKind.MALFORMED_REQUEST

    def __init__(self, message: Optional[str] = None, kind: Optional[ErrorKind] = None):
        if kind is not None:
            self.kind = kind
        super().__init__(message or MESSAGES[self.kind])

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.STORAGE_UNAVAILABLE

    @property
    def status_code(self) -> int:
        return status_for(self.kind)


class StorageUnavailableError(KeyGateError):
    """Storage backend unreachable, timed out or contended; safe to retry"""
    kind = ErrorKind.STORAGE_UNAVAILABLE


class UnauthorizedError(KeyGateError):
    """Bad or missing operator credential"""
    kind = ErrorKind.UNAUTHORIZED


class RateLimitedError(KeyGateError):
    """Client exceeded its admission window"""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class MalformedRequestError(KeyGateError):
    """Required fields missing or unparseable"""
    kind = ErrorKind.MALFORMED_REQUEST


class NotFoundError(KeyGateError):
    """Operator referenced a key or payload that does not exist"""
    kind = ErrorKind.INVALID_KEY


class ConfigurationError(Exception):
    """Deployment is misconfigured; raised at startup"""
