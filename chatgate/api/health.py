"""
Health and diagnostics endpoints.

Lightweight checks for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from chatgate.core.database import check_connection, get_engine, metadata
from chatgate.core.metrics import METRICS

logger = logging.getLogger("chatgate")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    required_tables = [table.name for table in metadata.sorted_tables]
    inspector = inspect(get_engine())
    missing = [t for t in required_tables if not inspector.has_table(t)]
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    payload = METRICS.export_prometheus()
    return Response(content=payload, media_type="text/plain")
