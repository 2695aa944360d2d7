"""
Pytest Configuration

Makes the ``src`` layout importable when the project has not been installed
in editable mode, so ``pytest`` works straight from a checkout.
"""

from __future__ import annotations

import sys
from pathlib import Path

# --- Globals ---

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
