from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


class StateFileError(ValueError):
    """Raised when a persisted state file exists but cannot be trusted."""


def load_state_record(path: Path) -> Optional[Dict[str, Any]]:
    """Load a JSON state record. Returns None when the file does not exist."""

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StateFileError(f"failed to read state file {path}: {exc}") from exc

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StateFileError(f"state file {path} is not valid JSON: {exc}") from exc

    if not isinstance(parsed, dict):
        raise StateFileError(f"state file {path} must contain a JSON object")
    return parsed


def save_state_record(path: Path, record: Mapping[str, Any]) -> None:
    """Atomically replace the state file with pretty-printed JSON."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(dict(record), indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)
