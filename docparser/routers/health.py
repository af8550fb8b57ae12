# docparser/routers/health.py
from __future__ import annotations

import asyncio
import logging
import platform
import time

import psutil
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from docparser.db import ping
from docparser.dependencies import Container, get_container

logger = logging.getLogger(__name__)

router = APIRouter(tags=["System Health"])

# Track uptime
start_time = time.time()

CHECK_TIMEOUT = 2.0


def _system_metrics() -> dict:
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage("/")
    return {
        "cpu_usage_percent": psutil.cpu_percent(interval=None),
        "memory_percent": memory.percent,
        "memory_used_mb": round(memory.used / (1024 * 1024), 2),
        "disk_percent": disk.percent,
        "uptime_hours": round((time.time() - start_time) / 3600, 2),
        "python_version": platform.python_version(),
    }


@router.get("/health")
async def health_check():
    return {"status": "healthy"}


@router.get("/ready")
async def readiness_check(container: Container = Depends(get_container)):
    details = {}

    try:
        await asyncio.wait_for(ping(container.engine), CHECK_TIMEOUT)
        details["database"] = "ok"
    except Exception as e:
        logger.warning("readiness: database check failed: %s", e)
        details["database"] = f"error: {e}"

    try:
        ok = await asyncio.wait_for(container.cache.ping(), CHECK_TIMEOUT)
        details["redis"] = "ok" if ok else "error: ping returned false"
    except Exception as e:
        logger.warning("readiness: cache check failed: %s", e)
        details["redis"] = f"error: {e}"

    ready = all(v == "ok" for v in details.values())
    body = {
        "status": "ready" if ready else "not_ready",
        "details": details,
        "system": _system_metrics(),
    }
    return JSONResponse(status_code=200 if ready else 503, content=body)
