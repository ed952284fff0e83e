"""
State persistence — atomic JSON read/write for engine data files.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


def read_json(path: Path) -> Dict[str, Any]:
    """Strict read: raises on missing file or invalid JSON."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object, got {type(data).__name__}")
    return data


def load_state(path: Path) -> Dict[str, Any]:
    """Load JSON state file. Returns empty dict if missing/corrupt."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        return read_json(path)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to load state {path}: {e}")
        return {}


def save_state(path: Path, data: Dict[str, Any]) -> None:
    """Atomically save JSON state (write-to-tmp, fsync, then replace).

    Raises OSError / TypeError on failure; callers decide about retries.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + '.tmp')
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(json.dumps(data, indent=2, ensure_ascii=False))
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)
