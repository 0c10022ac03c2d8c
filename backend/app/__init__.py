"""
Ad credit ledger backend.

Alembic and ``uvicorn --app-dir backend`` start with ``backend/`` as the
working directory; the project root goes first on ``sys.path`` so the
absolute ``backend.app`` imports used by services and migrations resolve.
"""
from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]

if str(PROJECT_ROOT) in sys.path:
    sys.path.remove(str(PROJECT_ROOT))
sys.path.insert(0, str(PROJECT_ROOT))
