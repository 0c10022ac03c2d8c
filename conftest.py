"""
Put the project root first on ``sys.path`` for the whole test session.

The suite imports ``backend.*`` absolutely; pytest's rootdir insertion
order would otherwise let ``backend/`` shadow the project copy.
"""
from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) in sys.path:
    sys.path.remove(str(PROJECT_ROOT))
sys.path.insert(0, str(PROJECT_ROOT))
