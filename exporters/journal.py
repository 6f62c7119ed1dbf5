from __future__ import annotations

import json
import threading
from pathlib import Path

from core.contracts import Snapshot


class JournalExporter:
    """Append-only NDJSON exporter, one snapshot per line, flushed per write."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("a", encoding="utf-8")
        self._lock = threading.Lock()

    def export(self, snapshot: Snapshot) -> None:
        line = json.dumps(snapshot.to_dict(), separators=(",", ":"), sort_keys=True)
        with self._lock:
            self._file.write(line + "\n")
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()


def read_journal(path: str | Path) -> list[Snapshot]:
    """Load every snapshot written by a JournalExporter."""
    snapshots: list[Snapshot] = []
    with Path(path).open("r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if line:
                snapshots.append(Snapshot.from_dict(json.loads(line)))
    return snapshots
