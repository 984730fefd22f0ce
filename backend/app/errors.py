from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException

from backend.app.request_id import get_request_id


def error_payload(
    *,
    code: str,
    message: str,
    request_id: Optional[str],
    meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    for key, value in (meta or {}).items():
        body.setdefault(key, value)
    return {"error": body}


class OpsError(HTTPException):
    """
    Business error with a stable ``code``. Rendered by the app-level handler as
    ``{"error": {"code", "message", "request_id", ...meta}}``.
    """

    code = "OPS_ERROR"
    status = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        meta: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.code = code or self.code
        self.message = message
        self.meta = dict(meta or {})
        super().__init__(
            status_code=status_code or self.status,
            detail={"code": self.code, "message": message, **self.meta},
            headers=headers,
        )

    def payload(self) -> Dict[str, Any]:
        return error_payload(code=self.code, message=self.message, request_id=get_request_id(), meta=self.meta)


class BadRequestError(OpsError):
    code = "BAD_REQUEST"
    status = 400


class UnauthorizedError(OpsError):
    code = "UNAUTHORIZED"
    status = 401


class ForbiddenError(OpsError):
    code = "FORBIDDEN"
    status = 403


class NotFoundError(OpsError):
    code = "NOT_FOUND"
    status = 404


class CaseConflictError(OpsError):
    code = "CASE_CONFLICT"
    status = 409

    def __init__(
        self,
        message: str = "Case is owned by another operator",
        *,
        request_id: str,
        assigned_to_user_id: Optional[str],
        claimed_at: Optional[str] = None,
    ) -> None:
        self.assigned_to_user_id = assigned_to_user_id
        super().__init__(
            message,
            meta={"case_request_id": request_id, "assigned_to_user_id": assigned_to_user_id, "claimed_at": claimed_at},
        )


class RateLimitedError(OpsError):
    code = "RATE_LIMITED"
    status = 429

    def __init__(self, *, retry_after_seconds: int, meta: Optional[Dict[str, Any]] = None) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "Rate limited - try again shortly",
            meta={**(meta or {}), "retry_after_seconds": retry_after_seconds},
            headers={"Retry-After": str(retry_after_seconds)},
        )
