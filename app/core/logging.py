from __future__ import annotations
import json, logging, sys, time, contextvars
from typing import Any, Dict
from app.core.config import settings

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default="-"
)

_configured = False


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": time.strftime(
                "%Y-%m-%dT%H:%M:%S",
                time.gmtime(getattr(record, "created", time.time())),
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(
                record, "correlation_id", correlation_id_var.get("-")
            ),
        }
        # Add common extras if present
        for k in ("event", "subscriber_id", "notification_id", "subscribers", "user_id"):
            if hasattr(record, k):
                base[k] = getattr(record, k)
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


def setup_logging() -> None:
    global _configured
    # root -> JSON to stdout
    root = logging.getLogger()
    root.setLevel(
        logging.INFO
        if (settings.LOG_LEVEL or "INFO") == "INFO"
        else logging.getLevelName(settings.LOG_LEVEL.upper())
    )
    # Route uvicorn logs through root JSON handler
    for lg in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lgr = logging.getLogger(lg)
        # Remove their own handlers to avoid duplicate emission
        lgr.handlers.clear()
        # Ensure records bubble up to root, which has the JSON handler
        lgr.propagate = True
        lgr.setLevel(root.level)
    # create_app() may run more than once per process (tests)
    if _configured:
        return
    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(JsonFormatter())
    root.addHandler(sh)
    _configured = True
