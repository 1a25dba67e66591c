from __future__ import annotations

import json
import logging
import sys
import threading
import time
import uuid

from common.utils import now_utc_iso
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

LOGGER = logging.getLogger("portfolio.ingestor.http")
REQUEST_ID_HEADER = "x-request-id"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("portfolio")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(getattr(handler, "_portfolio_handler", False) for handler in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._portfolio_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0, "rejected": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            if status_code in (400, 401):
                self._totals["rejected"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {"count": 0, "errors": 0, "latency_ms_sum": 0.0, "latency_ms_max": 0.0},
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if status_code >= 400:
                endpoint["errors"] = int(endpoint["errors"]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_max"] = max(float(endpoint["latency_ms_max"]), duration_ms)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            endpoints = {}
            for key, value in self._endpoints.items():
                count = int(value["count"])
                endpoints[key] = {
                    **value,
                    "latency_ms_avg": round(float(value["latency_ms_sum"]) / count, 3),
                }
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints=endpoints,
            )


def _log_request(level: int, request: Request, request_id: str, status_code: int, duration_ms: float, **extra) -> None:
    LOGGER.log(
        level,
        json.dumps(
            {
                "event": "request_complete",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 3),
                **extra,
            }
        ),
    )


def install_observability(app: FastAPI, metrics: MetricsStore) -> None:
    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            metrics.observe(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_failed",
                        "request_id": request_id,
                        "path": request.url.path,
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={REQUEST_ID_HEADER: request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        metrics.observe(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        _log_request(
            logging.WARNING if response.status_code >= 400 else logging.INFO,
            request,
            request_id,
            response.status_code,
            duration_ms,
            source_ip=request.client.host if request.client else None,
        )
        return response
