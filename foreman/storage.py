"""JSON file helpers shared by the project-local stores.

Writes go to a temp file in the same directory and are moved into
place with ``os.replace`` so a crash never leaves a half-written file.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger("foreman.store")


def atomic_write_json(path: Path, data: Any) -> None:
    """Serialize ``data`` to ``path`` atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=False)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def read_json(path: Path, default: Any) -> Any:
    """Load JSON from ``path``; a missing or corrupt file yields ``default``."""
    if not path.exists():
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("state_file_unreadable", path=str(path), error=str(e))
        return default
