# errors.py - Application error types rendered by main.py
# Body shape: {"code": ..., "message": ..., "details": ..., "request_id": ...}

from typing import Optional
from fastapi import HTTPException

# ============================================================
# ERROR CODES
# ============================================================

ERR_NOT_FOUND = "NOT_FOUND"
ERR_VALIDATION = "VALIDATION_ERROR"
ERR_INTERNAL = "INTERNAL_ERROR"
ERR_UNAUTHORIZED = "UNAUTHORIZED"
ERR_FORBIDDEN = "FORBIDDEN"
ERR_ALREADY_EXISTS = "ALREADY_EXISTS"

ERROR_STATUS = {
    ERR_NOT_FOUND: 404,
    ERR_VALIDATION: 400,
    ERR_INTERNAL: 500,
    ERR_UNAUTHORIZED: 401,
    ERR_FORBIDDEN: 403,
    ERR_ALREADY_EXISTS: 409,
}


class AppError(HTTPException):
    """HTTPException carrying a stable error code and optional details"""

    code = ERR_INTERNAL

    def __init__(self, message: str, details: str = "", code: Optional[str] = None):
        if code:
            self.code = code
        super().__init__(status_code=ERROR_STATUS.get(self.code, 500), detail=message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(AppError):
    code = ERR_NOT_FOUND


class ValidationError(AppError):
    code = ERR_VALIDATION


class InternalError(AppError):
    code = ERR_INTERNAL


class UnauthorizedError(AppError):
    code = ERR_UNAUTHORIZED


class ForbiddenError(AppError):
    code = ERR_FORBIDDEN


class AlreadyExistsError(AppError):
    code = ERR_ALREADY_EXISTS
