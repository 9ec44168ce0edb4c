"""Configuration paths for local ecograph snapshot storage."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("ECOGRAPH_HOME", str(Path.home() / ".ecograph"))).expanduser()
SNAPSHOT_DIR = BASE_DIR / "snapshots"
SUPPORTED_EXTENSIONS = {".py", ".yaml", ".yml"}

# Declared service inventory a repository may ship at its root
SERVICE_INVENTORY_FILE = "ecograph.services.yaml"

SKIP_DIRS = {
    ".git", ".hg", ".svn", "__pycache__", ".mypy_cache", ".pytest_cache",
    ".tox", ".venv", "venv", "env", "node_modules", "build", "dist", ".eggs",
}
