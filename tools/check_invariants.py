#!/usr/bin/env python3
"""rentloop invariant checks against the marketplace parameter file."""

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
PARAMS_PATH = ROOT / "config" / "marketplace_params.json"

sys.path.insert(0, str(ROOT / "src"))

from rentloop.policy.invariants import check  # noqa: E402


if __name__ == "__main__":
    raise SystemExit(check(PARAMS_PATH))
