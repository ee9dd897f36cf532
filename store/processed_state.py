"""
Durable record of assets that have already been converted.

Entries are keyed by the lower-cased filename (extension included) and hold
the source size and modification time observed when the file was confirmed
stable. An entry is current only while both still match the file on disk.

The store is a cache: losing it causes redundant work, never wrong pointers.
Writes go to a temporary file that is then renamed over the original, so a
crash mid-write leaves the previous version intact.
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessedEntry:
    size: int
    mtime_ns: int
    pointer: str
    processed_at: str

    def matches(self, size: int, mtime_ns: int) -> bool:
        return self.size == size and self.mtime_ns == mtime_ns

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessedEntry":
        return cls(
            size=int(data["size"]),
            mtime_ns=int(data["mtime_ns"]),
            pointer=str(data["pointer"]),
            processed_at=str(data.get("processed_at", "")),
        )


class ProcessedStateStore:
    """JSON-file backed map of filename key to ProcessedEntry."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: Dict[str, ProcessedEntry] = {}
        self.load()

    def load(self) -> None:
        """(Re)load entries from disk. Missing or corrupt files yield an empty store."""
        self._entries = {}
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Processed state file {self.path} unreadable, starting empty: {e}")
            return
        if not isinstance(raw, dict):
            logger.warning(f"Processed state file {self.path} is not a JSON object, starting empty")
            return
        for key, value in raw.items():
            try:
                self._entries[key] = ProcessedEntry.from_dict(value)
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Dropping malformed processed entry for '{key}'")

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {key: asdict(entry) for key, entry in sorted(self._entries.items())}
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def get(self, key: str) -> Optional[ProcessedEntry]:
        return self._entries.get(key)

    def is_current(self, key: str, size: int, mtime_ns: int) -> bool:
        """True when an entry exists for ``key`` and matches the given stat."""
        entry = self._entries.get(key)
        return entry is not None and entry.matches(size, mtime_ns)

    def record(self, key: str, size: int, mtime_ns: int, pointer: str) -> ProcessedEntry:
        entry = ProcessedEntry(
            size=size,
            mtime_ns=mtime_ns,
            pointer=pointer,
            processed_at=datetime.now(timezone.utc).isoformat(),
        )
        self._entries[key] = entry
        self._save()
        return entry

    def forget(self, key: str) -> bool:
        """Drop the entry for ``key``. Returns True if one existed."""
        if self._entries.pop(key, None) is None:
            return False
        self._save()
        return True

    def clear(self) -> None:
        self._entries = {}
        if self.path.exists():
            self.path.unlink()

    def entries(self) -> Iterator[Tuple[str, ProcessedEntry]]:
        return iter(sorted(self._entries.items()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
