"""
Health endpoints.

Lightweight checks for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from entitlement_sync.core.database import check_connection, get_engine
from entitlement_sync.core.logging import LOGGER_NAME
from entitlement_sync.features.billing.service import billing_enabled

logger = logging.getLogger(LOGGER_NAME)

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "entitlements",
    "payment_history",
    "allocation_history",
    "billing_events",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok", "billing_enabled": billing_enabled()}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
