from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def stash_stamp() -> str:
    """Compact timestamp used in stash labels (``merge-main-20240115-143022``)."""
    return datetime.now().strftime("%Y%m%d-%H%M%S")


def append_line(p: Path, line: str) -> None:
    """Append one line to ``p`` and flush it to disk. Never truncates."""
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "a", encoding="utf-8") as fh:
        fh.write(line.rstrip("\n") + "\n")
        fh.flush()
        os.fsync(fh.fileno())
