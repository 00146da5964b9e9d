from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware

# Headers the booking API reads from browsers; everything else is rejected
# at preflight.
_ALLOWED_HEADERS = [
    "Content-Type",
    "Authorization",
    "Idempotency-Key",
    "X-Request-ID",
]


def configure_cors(app, allowed: str | None, dev_origins: list[str] | None = None):
    raw_origins = [o.strip() for o in (allowed or "").split(",") if o.strip()]
    if not raw_origins:
        raw_origins = list(dev_origins or ["http://localhost:5173", "http://127.0.0.1:5173"])

    if "*" in raw_origins:
        # Wildcard origins must not be combined with credentialed requests.
        origins = ["*"]
        allow_credentials = False
    else:
        origins = raw_origins
        allow_credentials = True

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=_ALLOWED_HEADERS,
        expose_headers=["X-Request-ID"],
    )
    return origins
