from __future__ import annotations

from abuse_guard.api.routes.admin import router as admin_router
from abuse_guard.api.routes.health import router as health_router
from abuse_guard.api.routes.rate_limits import router as rate_limits_router

__all__ = ["admin_router", "health_router", "rate_limits_router"]
