"""Filename conventions shared by discovery, encoding and persistence."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import POINTER_PREFIX, SUPPORTED_VIDEO_EXTENSIONS


def normalize_key(filename: str) -> str:
    """Case-normalised filename used to key queued jobs and processed entries."""
    return os.path.basename(filename.replace("\\", "/")).lower()


def base_name_of(filename: str) -> str:
    """Filename without directory or extension: ``/uploads/Clip.MP4`` -> ``Clip``."""
    return Path(os.path.basename(filename.replace("\\", "/"))).stem


def is_video_file(filename: str) -> bool:
    return Path(filename).suffix.lower() in SUPPORTED_VIDEO_EXTENSIONS


def is_hidden(path: Path) -> bool:
    return any(part.startswith(".") for part in path.parts if part not in (".", ".."))


def pointer_for(base_name: str, prefix: str = POINTER_PREFIX) -> str:
    """Value stored in the owning row's pointer column."""
    return f"{prefix}/{base_name}.m3u8"


def master_playlist_name(base_name: str) -> str:
    return f"{base_name}.m3u8"


def tier_playlist_name(base_name: str, tier: str) -> str:
    return f"{base_name}_{tier}.m3u8"


def tier_segment_pattern(base_name: str, tier: str) -> str:
    return f"{base_name}_{tier}_%03d.ts"


@dataclass(frozen=True)
class VideoAsset:
    """Stat snapshot of a source file."""

    path: Path
    size: int
    mtime_ns: int

    @classmethod
    def from_path(cls, path: Path) -> Optional["VideoAsset"]:
        """Stat ``path``; None if it no longer exists."""
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        return cls(path=Path(path), size=st.st_size, mtime_ns=st.st_mtime_ns)

