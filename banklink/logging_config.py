import logging
import json
import sys
from datetime import timezone, datetime
from typing import Optional

from banklink.settings import settings

SERVICE_NAME = "banklink"

# Attributes lifted from `extra=` into the JSON record.
CONTEXT_FIELDS = ("request_id", "method", "tenant_id", "sync_run_id", "event_type", "entity_id")


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}:{record.lineno}",
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if hasattr(record, "path_url"):  # 'path' is reserved for file path
            log_obj["url"] = record.path_url

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def configure_logging(level: Optional[str] = None):
    root = logging.getLogger()
    root.setLevel((level or settings.LOG_LEVEL).upper())

    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)

    # Request logging middleware replaces uvicorn's access log
    logging.getLogger("uvicorn.access").disabled = True
