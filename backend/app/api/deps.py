# backend/app/api/deps.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from fastapi import Depends, Request

from backend.app.errors import ForbiddenError, UnauthorizedError
from backend.app.ops.rate_limit import rate_limiter
from backend.app.ops.schema import OpsActor

ROLE_ORDER = {
    "ops": 1,
    "admin": 2,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_ops_actor(request: Request) -> OpsActor:
    """
    Header-based identity for the ops console.

    Reads:
      - X-User-Id   (required)
      - X-Ops-Role  (``ops`` or ``admin``; defaults to ``ops``)

    Role facts are resolved by the gateway in front of this service; this
    dependency only maps them onto an OpsActor.
    """
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise UnauthorizedError("Missing X-User-Id header", code="MISSING_USER")

    role = (request.headers.get("X-Ops-Role") or "ops").strip().lower()
    if role not in ROLE_ORDER:
        raise ForbiddenError("ops role required", code="OPS_ROLE_REQUIRED")
    return OpsActor(user_id=user_id, is_ops=True, is_admin=ROLE_ORDER[role] >= ROLE_ORDER["admin"])


def require_admin(actor: OpsActor = Depends(get_ops_actor)) -> OpsActor:
    if not actor.is_admin:
        raise ForbiddenError("admin role required", code="ADMIN_REQUIRED")
    return actor


def rate_limit_dep(route: str, *, category: str = "ops_action") -> Callable[..., OpsActor]:
    """
    FastAPI dependency factory: resolves the actor and charges one hit
    against ``route``'s budget.

    Usage:
      @router.post("/ack")
      def ack(actor: OpsActor = Depends(rate_limit_dep("/api/ops/alerts/ack"))):
          ...
    """
    def _dep(actor: OpsActor = Depends(get_ops_actor)) -> OpsActor:
        rate_limiter.enforce(route, actor.user_id, category=category)
        return actor

    return _dep
