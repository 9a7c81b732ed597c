# errors.py — Typed, caller-visible errors raised by the service layer.
# The HTTP layer renders them via the handler registered in main.py; the
# real-time layer turns them into scoped *:error events.
from typing import Any, Optional


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(AppError):
    """Entity absent or not visible to the caller.

    Both cases produce the same error so unauthorised callers cannot learn
    whether it exists.
    """
    status_code = 404
    code = "NOT_FOUND"


class InvalidTransition(AppError):
    status_code = 400
    code = "INVALID_TRANSITION"


class Forbidden(AppError):
    status_code = 403
    code = "FORBIDDEN"


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidField(AppError):
    status_code = 400
    code = "INVALID_FIELD"
