import logging
import time
from typing import Any, Dict

from fastapi import Request, Response

log = logging.getLogger("loyalty.http")

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "x-api-key",
    "x-supabase-key",
    "apikey",
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """
    Root handler for the `loyalty.*` loggers. Safe to call more than once.
    """
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("loyalty").setLevel(level)


def _mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    out = {}
    for k, v in headers.items():
        if k.lower() in SENSITIVE_HEADERS:
            out[k] = "***masked***"
        else:
            out[k] = v
    return out


async def log_request_response(request: Request, response: Response, start_time: float):
    duration_ms = int((time.time() - start_time) * 1000)

    entry: Dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": duration_ms,
        "client": request.client.host if request.client else None,
        "headers": _mask_headers(dict(request.headers)),
    }

    log.info(entry)
