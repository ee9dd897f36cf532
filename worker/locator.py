"""Finding source files under the upload root and the rows that own them."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

from config import OWNER_LOOKUP_ATTEMPTS, OWNER_LOOKUP_BACKOFF
from store.owners import OwnerRepository, OwningRecord
from worker.assets import is_video_file, normalize_key

logger = logging.getLogger(__name__)


class AssetLocator:
    def __init__(
        self,
        uploads_dir: Path,
        owners: OwnerRepository,
        lookup_attempts: int = OWNER_LOOKUP_ATTEMPTS,
        lookup_backoff: float = OWNER_LOOKUP_BACKOFF,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.uploads_dir = Path(uploads_dir)
        self.owners = owners
        self.lookup_attempts = max(1, lookup_attempts)
        self.lookup_backoff = lookup_backoff
        self._sleep = sleep

    def _walk(self):
        """Yield (name, path) for visible files, in sorted order."""
        for root, dirs, files in os.walk(self.uploads_dir):
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            for name in sorted(files):
                if not name.startswith("."):
                    yield name, Path(root) / name

    def locate(self, filename: str) -> Optional[Path]:
        """Case-insensitive recursive search for ``filename``. First match in walk order wins."""
        wanted = normalize_key(filename)
        for name, path in self._walk():
            if name.lower() == wanted:
                return path
        return None

    def build_index(self) -> Dict[str, Path]:
        """Map normalised filename to path for every video under the upload root."""
        index: Dict[str, Path] = {}
        for name, path in self._walk():
            if is_video_file(name):
                index.setdefault(name.lower(), path)
        return index

    async def find_owner(self, filename: str) -> Optional[OwningRecord]:
        return await self.owners.find_owner(filename)

    async def resolve_owner(self, filename: str) -> Optional[OwningRecord]:
        """
        Look up the owning row, retrying while it is not there yet.

        A file can land on disk before the application inserts the row that
        references it, so misses are retried with exponential backoff.
        """
        for attempt in range(self.lookup_attempts):
            record = await self.owners.find_owner(filename)
            if record is not None:
                return record
            if attempt + 1 < self.lookup_attempts:
                delay = self.lookup_backoff * (2**attempt)
                logger.debug(
                    f"No owner for {filename} yet (attempt {attempt + 1}/{self.lookup_attempts}), retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
        logger.warning(f"No owning row references {filename} after {self.lookup_attempts} attempts")
        return None
