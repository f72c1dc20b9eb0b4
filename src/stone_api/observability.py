from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from time import perf_counter

from fastapi import FastAPI, Request
from starlette.middleware.base import RequestResponseEndpoint
from starlette.responses import Response

from stone_api.config import Settings

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

# Credentials must never reach the log sink, even if passed as extra fields.
_SECRET_FIELD_MARKERS = ("token", "secret", "password", "assertion", "authorization")

# Third-party loggers that would otherwise log every outbound request.
_CHATTY_LOGGERS = ("httpx", "httpcore")

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _is_secret_field(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_FIELD_MARKERS)


def _extra_fields(record: logging.LogRecord) -> dict[str, object]:
    return {
        key: "[redacted]" if _is_secret_field(key) else value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_extra_fields(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(settings: Settings) -> None:
    handler = logging.StreamHandler()
    if settings.app_log_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.app_log_level.upper(), logging.INFO))

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def register_request_logging(app: FastAPI) -> None:
    logger = logging.getLogger("stone_api.request")

    @app.middleware("http")
    async def log_request(request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            logger.info(
                "request_completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": round((perf_counter() - started) * 1000.0, 2),
                    "request_id": getattr(request.state, "request_id", "")
                    or request.headers.get("x-request-id", ""),
                },
            )
