from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping

from fastapi import FastAPI
from fastapi.responses import JSONResponse

_log = logging.getLogger("serials.health")


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    checks: Mapping[str, Callable[[], None]] | None = None,
):
    """
    Mount GET /health. Each entry in ``checks`` is a readiness probe that
    raises on failure; any failing probe turns the response into a 503 with
    ``status="degraded"``.
    """

    @app.get("/health")
    def _health():
        results: dict[str, str] = {}
        ok = True
        for name, probe in (checks or {}).items():
            try:
                probe()
                results[name] = "ok"
            except Exception as e:
                _log.warning("health check %s failed: %s", name, e)
                results[name] = "error"
                ok = False
        body = {
            "status": "ok" if ok else "degraded",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
            "checks": results,
        }
        return JSONResponse(body, status_code=200 if ok else 503)

    return _health
