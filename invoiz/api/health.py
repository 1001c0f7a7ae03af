"""
Health endpoints for the Invoiz backend.

Lightweight probes for orchestration; no secrets, no stack traces.
"""

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from invoiz.core.database import check_connection, get_engine
from invoiz.core.logging import latency_bucket_ms

logger = logging.getLogger("invoiz")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["app_users", "subscription_transactions"]


@root_router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    start = time.perf_counter()
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except SQLAlchemyError as e:
        logger.error(f"[readyz] table inspection failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    logger.info(
        "health.ready",
        extra={"latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000)},
    )
    return {"status": "ok"}
