"""
Health endpoints for orderflow.

``/health`` and ``/health/live`` answer without touching anything.
``/health/ready`` probes the database, the cache, the gateway
configuration and host memory, and reports the worst result; only a
``fail`` turns the response into a 503. ``/metrics`` exposes process
counters.
"""

import os
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import psutil
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine

from .logging_config import get_logger

logger = get_logger(__name__)

MEMORY_FAIL_MB = 100
MEMORY_WARN_MB = 500


class HealthStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


_SEVERITY = {HealthStatus.PASS: 0, HealthStatus.WARN: 1, HealthStatus.FAIL: 2}


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _result(status_value: HealthStatus, component_type: str, **fields: Any) -> Dict[str, Any]:
    return {"status": status_value, "componentType": component_type, "time": _timestamp(), **fields}


def worst(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
    if not checks:
        return HealthStatus.PASS
    return max((HealthStatus(c["status"]) for c in checks.values()), key=_SEVERITY.__getitem__)


class ServiceHealth:
    """Health router for one orderflow process.

    The engine and probes are handed in by ``main`` so readiness exercises
    the same objects the workflows use.
    """

    def __init__(
        self,
        service_name: str,
        version: str = "1.0.0",
        engine: Optional[Engine] = None,
        cache_ping: Optional[Callable[[], bool]] = None,
        gateway_configured: Optional[Callable[[], bool]] = None,
    ):
        self.service_name = service_name
        self.version = version
        self.engine = engine
        self.cache_ping = cache_ping
        self.gateway_configured = gateway_configured
        self.started_at = time.monotonic()
        self.readiness_probes = 0

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])
        router.add_api_route("/health", self.health, methods=["GET"])
        router.add_api_route("/health/live", self.live, methods=["GET"])
        router.add_api_route("/health/ready", self.ready, methods=["GET"])
        router.add_api_route("/metrics", self.metrics, methods=["GET"])
        return router

    def health(self) -> Dict[str, Any]:
        return {
            "status": HealthStatus.PASS,
            "service": self.service_name,
            "version": self.version,
            "releaseId": os.getenv("RELEASE_ID", "unknown"),
            "timestamp": _timestamp(),
        }

    def live(self) -> Dict[str, str]:
        return {"status": "alive"}

    def ready(self) -> JSONResponse:
        checks = self.run_checks()
        overall = worst(checks)
        return JSONResponse(
            status_code=503 if overall == HealthStatus.FAIL else 200,
            content={
                "status": overall,
                "serviceId": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "checks": checks,
                "timestamp": _timestamp(),
            },
        )

    def metrics(self) -> Dict[str, Any]:
        process = psutil.Process()
        memory = process.memory_info()
        return {
            "service": self.service_name,
            "version": self.version,
            "uptime_seconds": round(time.monotonic() - self.started_at, 3),
            "readiness_probes": self.readiness_probes,
            "process": {
                "rss_bytes": memory.rss,
                "vms_bytes": memory.vms,
                "threads": process.num_threads(),
                "cpu_percent": process.cpu_percent(interval=None),
            },
            "timestamp": _timestamp(),
        }

    def run_checks(self) -> Dict[str, Dict[str, Any]]:
        self.readiness_probes += 1
        checks = {"database:connectivity": self.check_database()}
        if self.cache_ping is not None:
            checks["cache:connectivity"] = self.check_cache()
        if self.gateway_configured is not None:
            checks["gateway:configuration"] = self.check_gateway()
        checks["system:memory"] = self.check_memory()
        return checks

    def check_database(self) -> Dict[str, Any]:
        if self.engine is None:
            return _result(HealthStatus.WARN, "datastore", output="No engine configured")
        started = time.perf_counter()
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Database readiness probe failed: {e}")
            return _result(HealthStatus.FAIL, "datastore", output=str(e))
        elapsed_ms = (time.perf_counter() - started) * 1000
        return _result(HealthStatus.PASS, "datastore", observedValue=round(elapsed_ms, 2), observedUnit="ms")

    def check_cache(self) -> Dict[str, Any]:
        # Redis is optional: the cache degrades to process memory
        if self.cache_ping():
            return _result(HealthStatus.PASS, "cache")
        return _result(HealthStatus.WARN, "cache", output="Redis unreachable, serving from local cache")

    def check_gateway(self) -> Dict[str, Any]:
        if self.gateway_configured():
            return _result(HealthStatus.PASS, "component")
        return _result(HealthStatus.WARN, "component", output="Stripe keys not configured")

    def check_memory(self) -> Dict[str, Any]:
        available_mb = psutil.virtual_memory().available / (1024 ** 2)
        if available_mb < MEMORY_FAIL_MB:
            status_value = HealthStatus.FAIL
        elif available_mb < MEMORY_WARN_MB:
            status_value = HealthStatus.WARN
        else:
            status_value = HealthStatus.PASS
        return _result(status_value, "system", observedValue=round(available_mb, 2), observedUnit="MB")
