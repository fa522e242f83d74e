from __future__ import annotations

from typing import Any

VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_FOUND = "NOT_FOUND"
CONFLICT = "CONFLICT"
UNAUTHORIZED = "UNAUTHORIZED"
FORBIDDEN = "FORBIDDEN"
UPDATE_FAILED = "UPDATE_FAILED"
DELETE_FAILED = "DELETE_FAILED"
INTERNAL_ERROR = "INTERNAL_ERROR"

HTTP_STATUS_BY_CODE = {
    VALIDATION_ERROR: 400,
    UNAUTHORIZED: 401,
    FORBIDDEN: 403,
    NOT_FOUND: 404,
    CONFLICT: 409,
}

CODE_BY_HTTP_STATUS = {status: code for code, status in HTTP_STATUS_BY_CODE.items()}


class DomainError(Exception):
    """Tagged failure carrying a machine-readable code.

    Raised where the problem is detected and translated to an HTTP
    envelope only at the request boundary.
    """

    def __init__(self, message: str, code: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details is not None:
            payload["details"] = self.details
        return payload


def domain_error_to_http(error: DomainError) -> int:
    return HTTP_STATUS_BY_CODE.get(error.code, 500)


def code_for_http_status(status_code: int) -> str:
    if status_code == 405:
        return "METHOD_NOT_ALLOWED"
    return CODE_BY_HTTP_STATUS.get(status_code, INTERNAL_ERROR)


def error_envelope(error: DomainError) -> dict[str, Any]:
    return {"ok": False, "error": error.to_dict()}
