"""
Structural validation of HLS renditions on disk.

A playlist is valid when it starts with #EXTM3U, references at least one
file, and every referenced file exists inside the rendition directory and
is non-empty. Tier playlists must also carry #EXT-X-ENDLIST, which ffmpeg
only writes once a VOD encode has finished.
"""

import logging
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Tuple

from worker.assets import master_playlist_name, tier_playlist_name

logger = logging.getLogger(__name__)


def playlist_references(content: str) -> List[str]:
    """Non-blank, non-tag lines of a playlist."""
    refs = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        refs.append(line)
    return refs


def check_playlist(path: Path, require_endlist: bool = False) -> Tuple[bool, Optional[str]]:
    """
    Validate one playlist file.

    Returns:
        (is_valid, reason) where reason is None when valid
    """
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return False, f"Missing playlist: {path.name}"
    except (OSError, UnicodeDecodeError) as e:
        return False, f"Error reading playlist {path.name}: {e}"

    if not content.startswith("#EXTM3U"):
        return False, f"Missing #EXTM3U header in {path.name}"
    if require_endlist and "#EXT-X-ENDLIST" not in content:
        return False, f"Missing #EXT-X-ENDLIST in {path.name} (incomplete encode)"

    refs = playlist_references(content)
    if not refs:
        return False, f"{path.name} references no files"

    for ref in refs:
        ref_path = PurePosixPath(ref)
        if ref_path.is_absolute() or ".." in ref_path.parts or "://" in ref:
            return False, f"{path.name} references a file outside the rendition: {ref}"
        target = path.parent / ref
        try:
            size = target.stat().st_size
        except FileNotFoundError:
            return False, f"Missing file referenced by {path.name}: {ref}"
        except OSError as e:
            return False, f"Cannot stat {ref}: {e}"
        if size == 0:
            return False, f"Empty file referenced by {path.name}: {ref}"

    return True, None


def validate(output_dir: Path, base_name: str, tier: Optional[str] = None) -> bool:
    """Validate one tier playlist, or the master playlist when ``tier`` is None."""
    if tier is None:
        path = output_dir / master_playlist_name(base_name)
        valid, reason = check_playlist(path)
    else:
        path = output_dir / tier_playlist_name(base_name, tier)
        valid, reason = check_playlist(path, require_endlist=True)
    if not valid:
        logger.debug(f"Validation failed for {output_dir.name}: {reason}")
    return valid


def validate_rendition(output_dir: Path, base_name: str, tiers: Iterable[str]) -> Tuple[bool, Optional[str]]:
    """Check every tier playlist and the master playlist of a rendition."""
    for tier in tiers:
        valid, reason = check_playlist(output_dir / tier_playlist_name(base_name, tier), require_endlist=True)
        if not valid:
            return False, reason
    return check_playlist(output_dir / master_playlist_name(base_name))
