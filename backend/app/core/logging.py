import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

# Configure logging levels
LOG_LEVEL_STR = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL = getattr(logging, LOG_LEVEL_STR, logging.INFO)

# "json" (default) or "text" for local terminals
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()

# Keys lifted from extra={"data": ...} to the top level so ledger logs can be joined
CORRELATION_KEYS = ("request_id", "account_id", "event_id", "operation_id")


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per record.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        data = getattr(record, "data", None)
        if isinstance(data, dict):
            for key in CORRELATION_KEYS:
                if data.get(key) is not None:
                    log_record[key] = data[key]
            log_record["data"] = data
        elif data is not None:
            log_record["data"] = data

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, default=str)


def setup_logging():
    """
    Configures the root logger once; repeated calls return the same logger.
    """
    logger = logging.getLogger()
    logger.setLevel(LOG_LEVEL)

    if any(getattr(h, "_adg_handler", False) for h in logger.handlers):
        return logger

    handler = logging.StreamHandler(sys.stdout)
    if LOG_FORMAT == "text":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    else:
        handler.setFormatter(JSONFormatter())
    handler._adg_handler = True  # type: ignore[attr-defined]

    # Remove existing handlers to avoid duplicates (e.g. from Uvicorn's default config)
    logger.handlers = [h for h in logger.handlers if h.__class__.__module__.startswith("_pytest")]
    logger.addHandler(handler)

    logging.getLogger("uvicorn.access").disabled = True

    # Stripe's SDK logs request bodies at INFO
    for noisy_logger in ["stripe", "urllib3", "httpcore", "httpx"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    return logger
