"""Tests for the agent team engine.

The engine lives as flat script modules under extension/skills/team/scripts;
make them importable by bare name when the project is not pip-installed.
"""

from __future__ import annotations

import sys
from pathlib import Path

SCRIPTS_DIR = Path(__file__).resolve().parents[2] / "extension" / "skills" / "team" / "scripts"
if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))
