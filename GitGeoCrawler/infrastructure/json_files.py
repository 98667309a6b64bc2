"""
Durable JSON file helpers shared by the checkpoint and result stores.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from core.errors import PersistenceError

logger = logging.getLogger(__name__)

_MISSING = object()


def read_json(path: Path, default: Any = _MISSING) -> Any:
    """
    Read a JSON document.

    Returns `default` when the file does not exist. A file that exists but
    cannot be read or parsed raises PersistenceError.
    """
    if not path.exists():
        if default is _MISSING:
            raise PersistenceError(f"{path} does not exist")
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise PersistenceError(f"Could not read {path}: {e}") from e


def atomic_write_json(path: Path, payload: Any):
    """
    Replace `path` with `payload` so readers see the old or the new document,
    never a partial one.
    """
    content = json.dumps(payload, indent=2, ensure_ascii=False)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise PersistenceError(f"Could not write {path}: {e}") from e
    finally:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
