"""JSONL audit trail for credit operations, plus a small timing helper."""

from __future__ import annotations

import json
import os
import socket
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Optional

from backend.app.core.config import settings

# Webhooks, credit RPCs and the resize fan-out all append from worker threads.
_WRITE_LOCK = threading.Lock()


def _env_bool(name: str) -> Optional[bool]:
    val = os.getenv(name)
    if val is None:
        return None
    val = val.strip().lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    return None


def should_log_events() -> bool:
    """
    Decide whether ledger events go to the local JSONL audit file.
    - Explicit override via LEDGER_EVENT_LOGGING (1/0).
    - Skipped during pytest unless explicitly enabled.
    - Otherwise only in dev; production relies on the credit_operations table.
    """
    override = _env_bool("LEDGER_EVENT_LOGGING")
    if override is not None:
        return override

    if "PYTEST_CURRENT_TEST" in os.environ:
        return False

    return settings.is_dev


def _resolve_log_path() -> Path:
    explicit = os.getenv("LEDGER_EVENT_LOG_PATH")
    if explicit:
        return Path(explicit).resolve()
    return (settings.project_root / "logs" / "ledger_events.jsonl").resolve()


def log_ledger_event(event: dict[str, Any]) -> None:
    """Append one audit row. Best-effort: a broken audit file never fails a credit operation."""
    if not should_log_events():
        return

    row = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "host": socket.gethostname(),
        "pid": os.getpid(),
        "app_env": settings.app_env.value,
        **event,
    }
    line = json.dumps(row, ensure_ascii=False, default=str) + "\n"

    path = _resolve_log_path()
    try:
        with _WRITE_LOCK:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(line)
    except OSError:
        return


@contextmanager
def measure_time(
    timings_dict: dict[str, float], key: str
) -> Generator[None, None, None]:
    """
    Store the wall time of the block under ``key``, even if it raises.

        with measure_time(timings, "generation_s"):
            orchestrator.generate_ads(request)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        timings_dict[key] = time.perf_counter() - start
