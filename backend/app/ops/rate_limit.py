"""
In-memory sliding-window rate limiter for ops routes.

Buckets are keyed by (route, actor). Every rejection is also recorded in a
short log that feeds the ``rate_limits`` signal and the rate-limit alert rule.
State is per process.
"""

from __future__ import annotations

import logging
import math
import os
import time
from collections import Counter
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional, Tuple

from backend.app.errors import RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_BUDGETS: Dict[str, Tuple[int, int]] = {
    # route key -> (limit, window seconds)
    "/api/ops/system-status": (60, 60),
    "/api/ops/alerts": (30, 60),
    "/api/ops/alerts/test": (5, 60),
    "/api/ops/alerts/ack": (30, 60),
    "/api/alerts/ack": (20, 60),
    "/api/ops/audits": (30, 60),
    "/api/ops/training/scenarios": (10, 60),
    "/api/ops/billing/snapshot": (20, 60),
    "/api/ops/case": (60, 60),
}
DEFAULT_BUDGET = (60, 60)
LIMIT_LOG_RETENTION_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class RateLimitBudget:
    route: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int = 0
    retry_after_seconds: int = 0


def _env_key(route: str) -> str:
    slug = "".join(ch if ch.isalnum() else "_" for ch in route.strip("/")).upper()
    return f"OPS_RATE_LIMIT_{slug}"


def get_budget(route: str) -> RateLimitBudget:
    """Budget for ``route``; ``OPS_RATE_LIMIT_<ROUTE>=limit/window_seconds`` overrides the default."""
    limit, window = DEFAULT_BUDGETS.get(route, DEFAULT_BUDGET)
    raw = os.getenv(_env_key(route))
    if raw:
        head, _, tail = raw.partition("/")
        try:
            limit = int(head)
            window = int(tail) if tail else window
        except ValueError:
            logger.warning("ignoring malformed rate limit override %s=%s", _env_key(route), raw)
    return RateLimitBudget(route=route, limit=limit, window_seconds=window)


class InMemoryRateLimiter:
    def __init__(self) -> None:
        self._lock = Lock()
        self._history: Dict[Tuple[str, str], List[float]] = {}
        self._limited: List[Tuple[str, Optional[str], float]] = []

    def check(
        self,
        route: str,
        identifier: Optional[str],
        *,
        limit: int,
        window_seconds: int,
        category: Optional[str] = None,
        now: Optional[float] = None,
    ) -> RateLimitResult:
        now = time.time() if now is None else now
        key = (route, identifier or "anon")
        with self._lock:
            history = [ts for ts in self._history.get(key, []) if ts >= now - window_seconds]
            history.append(now)
            self._history[key] = history
            if len(history) > limit:
                retry_after = max(1, math.ceil(history[0] + window_seconds - now))
                self._limited.append((route, category, now))
                self._prune(now)
                return RateLimitResult(allowed=False, retry_after_seconds=retry_after)
            return RateLimitResult(allowed=True, remaining=max(0, limit - len(history)))

    def enforce(self, route: str, identifier: Optional[str], *, category: Optional[str] = "ops_action") -> None:
        budget = get_budget(route)
        result = self.check(route, identifier, limit=budget.limit, window_seconds=budget.window_seconds, category=category)
        if not result.allowed:
            raise RateLimitedError(
                retry_after_seconds=result.retry_after_seconds,
                meta={"limit_key": route, "budget": f"{budget.limit}/{budget.window_seconds}s"},
            )

    def _prune(self, now: float) -> None:
        cutoff = now - LIMIT_LOG_RETENTION_SECONDS
        self._limited = [entry for entry in self._limited if entry[2] >= cutoff]

    def entries(self, since: float) -> List[Tuple[str, Optional[str], float]]:
        with self._lock:
            return [entry for entry in self._limited if entry[2] >= since]

    def summary(self, since: float) -> Dict[str, object]:
        """Rejections since ``since`` (epoch seconds): total hits and routes ranked by count."""
        recent = self.entries(since)
        by_route = Counter(route for route, _, _ in recent)
        top_routes = [
            {"route": route, "count": count}
            for route, count in sorted(by_route.items(), key=lambda item: (-item[1], item[0]))
        ]
        return {"hits": len(recent), "top_routes": top_routes}

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._limited.clear()


rate_limiter = InMemoryRateLimiter()
