"""Error taxonomy shared by every service and mapped onto the API envelope."""
from enum import Enum


class ErrorKind(str, Enum):
    UNAUTHORIZED = "Unauthorized"
    NOT_FOUND = "NotFound"
    CIRCULAR_REFERENCE = "CircularReference"
    DEPTH_LIMIT_EXCEEDED = "DepthLimitExceeded"
    NAME_CONFLICT = "NameConflict"
    QUOTA_EXCEEDED = "QuotaExceeded"
    FILE_TOO_LARGE = "FileTooLarge"
    ALREADY_LINKED = "AlreadyLinked"
    NOT_AUTHORIZED = "NotAuthorized"
    LINK_INACTIVE = "LinkInactive"
    INVALID_INPUT = "InvalidInput"
    VERIFICATION_FAILED = "VerificationFailed"
    STORAGE_UNAVAILABLE = "StorageUnavailable"
    RATE_LIMITED = "RateLimited"
    INTERNAL = "Internal"


class FoldlyError(Exception):
    kind = ErrorKind.INTERNAL
    status_code = 500

    def __init__(self, message: str = "", details: dict | None = None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.details = details or {}


class Unauthorized(FoldlyError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 403


class NotFound(FoldlyError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class CircularReference(FoldlyError):
    kind = ErrorKind.CIRCULAR_REFERENCE
    status_code = 409


class DepthLimitExceeded(FoldlyError):
    kind = ErrorKind.DEPTH_LIMIT_EXCEEDED
    status_code = 409


class NameConflict(FoldlyError):
    kind = ErrorKind.NAME_CONFLICT
    status_code = 409


class QuotaExceeded(FoldlyError):
    kind = ErrorKind.QUOTA_EXCEEDED
    status_code = 413


class FileTooLarge(FoldlyError):
    kind = ErrorKind.FILE_TOO_LARGE
    status_code = 413


class AlreadyLinked(FoldlyError):
    kind = ErrorKind.ALREADY_LINKED
    status_code = 409


class NotAuthorized(FoldlyError):
    """Email is not (or no longer) allowed to upload through a link."""
    kind = ErrorKind.NOT_AUTHORIZED
    status_code = 403


class LinkInactive(FoldlyError):
    kind = ErrorKind.LINK_INACTIVE
    status_code = 410


class InvalidInput(FoldlyError):
    kind = ErrorKind.INVALID_INPUT
    status_code = 422


class VerificationFailed(FoldlyError):
    kind = ErrorKind.VERIFICATION_FAILED
    status_code = 400


class StorageUnavailable(FoldlyError):
    kind = ErrorKind.STORAGE_UNAVAILABLE
    status_code = 503
