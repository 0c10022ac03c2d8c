import json
from pathlib import Path

import pytest

from backend.app.core import metrics
from backend.app.core.config import AppEnv, settings


def test_env_bool_handles_unknown(monkeypatch):
    monkeypatch.setenv("LEDGER_EVENT_LOGGING", "maybe")
    assert metrics._env_bool("LEDGER_EVENT_LOGGING") is None


def test_should_log_events_respects_override(monkeypatch) -> None:
    monkeypatch.setenv("LEDGER_EVENT_LOGGING", "1")
    assert metrics.should_log_events() is True

    monkeypatch.setenv("LEDGER_EVENT_LOGGING", "off")
    assert metrics.should_log_events() is False


def test_should_log_events_is_quiet_under_pytest(monkeypatch) -> None:
    monkeypatch.delenv("LEDGER_EVENT_LOGGING", raising=False)
    monkeypatch.setattr(settings, "app_env", AppEnv.DEV)
    assert metrics.should_log_events() is False


def test_should_log_events_defaults_to_dev(monkeypatch) -> None:
    monkeypatch.delenv("LEDGER_EVENT_LOGGING", raising=False)
    monkeypatch.delenv("PYTEST_CURRENT_TEST", raising=False)

    monkeypatch.setattr(settings, "app_env", AppEnv.DEV)
    assert metrics.should_log_events() is True

    monkeypatch.setattr(settings, "app_env", AppEnv.PRODUCTION)
    assert metrics.should_log_events() is False


def test_log_ledger_event_writes_jsonl(monkeypatch, tmp_path: Path) -> None:
    log_path = tmp_path / "events" / "ledger.jsonl"
    monkeypatch.setenv("LEDGER_EVENT_LOGGING", "1")
    monkeypatch.setenv("LEDGER_EVENT_LOG_PATH", str(log_path))

    metrics.log_ledger_event({"event": "credit_operation", "amount": 5})
    metrics.log_ledger_event({"event": "credit_operation", "amount": 7})

    rows = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert [row["amount"] for row in rows] == [5, 7]
    assert {"ts", "host", "app_env"} <= rows[0].keys()


def test_log_ledger_event_never_raises(monkeypatch, tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    monkeypatch.setenv("LEDGER_EVENT_LOGGING", "1")
    monkeypatch.setenv("LEDGER_EVENT_LOG_PATH", str(blocker / "ledger.jsonl"))

    metrics.log_ledger_event({"event": "credit_operation"})


def test_measure_time_records_even_on_error() -> None:
    timings: dict[str, float] = {}
    with pytest.raises(RuntimeError):
        with metrics.measure_time(timings, "step_s"):
            raise RuntimeError("boom")
    assert timings["step_s"] >= 0
