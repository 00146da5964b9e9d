from .request_id import RequestIDMiddleware, get_request_id
from .cors import configure_cors
from .health import add_standard_health
from .logging import JsonFormatter, setup_json_logging
from .lifecycle import register_startup, register_shutdown

__all__ = [
    "RequestIDMiddleware",
    "get_request_id",
    "configure_cors",
    "add_standard_health",
    "JsonFormatter",
    "setup_json_logging",
    "register_startup",
    "register_shutdown",
]
