from __future__ import annotations

import sys
from pathlib import Path

HERE = Path(__file__).resolve().parent
SRC = HERE / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

TESTS = HERE / "tests"
if str(TESTS) not in sys.path:
    sys.path.insert(0, str(TESTS))
