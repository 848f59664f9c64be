"""
Error taxonomy for the upload pipeline.

Services raise these; ``main.py`` renders every one of them as
``{"success": false, "error": ..., "code": ...}``. ``NotFoundError`` is used
for both missing and not-owned rows so callers cannot tell whether a row exists.
"""

from typing import Any, Dict, Optional

from starlette import status


class FoldlyError(Exception):
    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code}


class UnauthorizedError(FoldlyError):
    code = "UNAUTHORIZED"
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(FoldlyError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidInputError(FoldlyError):
    code = "INVALID_INPUT"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidIPError(FoldlyError):
    code = "INVALID_IP"
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(FoldlyError):
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class StorageError(FoldlyError):
    code = "STORAGE_ERROR"


class DatabaseError(FoldlyError):
    code = "DATABASE_ERROR"


class InternalError(FoldlyError):
    code = "INTERNAL_ERROR"


class RateLimitedError(FoldlyError):
    code = "RATE_LIMITED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, reset_at: float):
        super().__init__(message)
        self.reset_at = reset_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "blocked": True,
            "resetAt": int(self.reset_at * 1000),
        }


class LinkAccessError(FoldlyError):
    """Raised by the link access validator; ``code`` is one of
    INVALID_FORMAT, NOT_FOUND, INACTIVE or EXPIRED."""

    _statuses = {
        "INVALID_FORMAT": status.HTTP_400_BAD_REQUEST,
        "NOT_FOUND": status.HTTP_404_NOT_FOUND,
        "INACTIVE": status.HTTP_403_FORBIDDEN,
        "EXPIRED": status.HTTP_410_GONE,
    }

    def __init__(self, message: str, code: str):
        super().__init__(message, code)
        self.status_code = self._statuses.get(code, status.HTTP_400_BAD_REQUEST)
