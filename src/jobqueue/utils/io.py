from __future__ import annotations

import json
import os
from contextlib import suppress
from pathlib import Path
from typing import Any


def read_json_file(path: Path, default: Any) -> Any:
    """Missing or empty file -> `default`; corrupt JSON propagates."""
    p = Path(path)
    if not p.exists():
        return default
    raw = p.read_text(encoding="utf-8")
    if not raw.strip():
        return default
    return json.loads(raw)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write to a temp sibling and `os.replace` it over the target."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(f"{p.name}.tmp.{os.getpid()}")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=False, default=str)
        f.flush()
        with suppress(OSError):
            os.fsync(f.fileno())
    os.replace(tmp, p)
