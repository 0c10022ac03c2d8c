import os
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Set trusted hosts and env BEFORE any app import
os.environ.setdefault("ADG_TRUSTED_HOSTS", "localhost,testserver")
os.environ.setdefault("APP_ENV", "dev")

# The app's lifespan opens this database; tests inject their own per-test database.
_SESSION_DB_DIR = Path(tempfile.mkdtemp(prefix="adg-tests-"))
os.environ.setdefault("ADG_DATABASE_URL", f"sqlite:///{_SESSION_DB_DIR / 'app.db'}")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

# Keep ledger audit events out of the working tree
os.environ["LEDGER_EVENT_LOGGING"] = "0"


@pytest.fixture
def db(tmp_path: Path):
    from backend.app.core.database import Database

    database = Database(url=f"sqlite:///{tmp_path / 'ledger.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def ledger(db):
    from backend.app.services.ledger import CreditLedger

    return CreditLedger(db, starting_credits=0)


@pytest.fixture
def op_logger(db):
    from backend.app.services.operation_log import CreditOperationLogger

    return CreditOperationLogger(db)


@pytest.fixture
def gate(ledger, op_logger):
    from backend.app.services.credit_gate import CreditGate

    return CreditGate(ledger, op_logger)


@pytest.fixture
def client(db, monkeypatch) -> TestClient:
    from backend.app.api import deps
    from backend.app.core.config import settings
    from backend.main import app

    monkeypatch.setattr(settings, "service_token", None)
    app.dependency_overrides[deps.get_db] = lambda: db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
