"""Append-only audit trail for bulk sync sessions.

One line per event::

    2024-01-15 14:30:22 | branch=main | head=3f2a1bc | action=start
    2024-01-15 14:30:41 | branch=main | head=9e0d4aa | action=end | merged=2

The log is only ever appended to. It narrates what happened after a crash and
plays no part in runtime decisions.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .fs import append_line
from .observability import log_warning


TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class BreadcrumbAction(str, Enum):
    START = "start"
    END = "end"


@dataclass(frozen=True)
class BreadcrumbEntry:
    timestamp: datetime
    target_branch: str
    head: str
    action: BreadcrumbAction
    merged: Optional[int] = None

    def format(self) -> str:
        parts = [
            self.timestamp.strftime(TIMESTAMP_FORMAT),
            f"branch={self.target_branch}",
            f"head={self.head}",
            f"action={self.action.value}",
        ]
        if self.merged is not None:
            parts.append(f"merged={self.merged}")
        return " | ".join(parts)

    @classmethod
    def parse(cls, line: str) -> "BreadcrumbEntry":
        parts = [p.strip() for p in line.strip().split("|")]
        if len(parts) < 4:
            raise ValueError(f"not a breadcrumb line: {line!r}")
        fields = {}
        for part in parts[1:]:
            key, sep, value = part.partition("=")
            if not sep:
                raise ValueError(f"malformed breadcrumb field {part!r}")
            fields[key] = value
        merged = fields.get("merged")
        return cls(
            timestamp=datetime.strptime(parts[0], TIMESTAMP_FORMAT),
            target_branch=fields["branch"],
            head=fields["head"],
            action=BreadcrumbAction(fields["action"]),
            merged=int(merged) if merged is not None else None,
        )


class BreadcrumbLog:
    """Append-only sink for :class:`BreadcrumbEntry` records."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def append(
        self,
        target_branch: str,
        head: str,
        action: BreadcrumbAction,
        merged: Optional[int] = None,
    ) -> BreadcrumbEntry:
        entry = BreadcrumbEntry(
            timestamp=datetime.now().replace(microsecond=0),
            target_branch=target_branch,
            head=head or "unknown",
            action=BreadcrumbAction(action),
            merged=merged,
        )
        append_line(self.path, entry.format())
        return entry

    def start(self, target_branch: str, head: str) -> BreadcrumbEntry:
        return self.append(target_branch, head, BreadcrumbAction.START)

    def end(self, target_branch: str, head: str, merged: int) -> BreadcrumbEntry:
        return self.append(target_branch, head, BreadcrumbAction.END, merged)

    def read(self, tail: Optional[int] = None) -> List[BreadcrumbEntry]:
        """Parse entries back, skipping lines that are not breadcrumbs."""
        if not self.path.exists():
            return []
        entries: deque = deque(maxlen=tail if tail and tail > 0 else None)
        with open(self.path, encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, 1):
                if not line.strip():
                    continue
                try:
                    entries.append(BreadcrumbEntry.parse(line))
                except (ValueError, KeyError) as exc:
                    log_warning(f"[BREADCRUMB] skipping line {lineno} of {self.path}: {exc}")
        return list(entries)
