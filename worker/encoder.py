"""
Rendition encoding: source probing, per-tier ffmpeg invocations and the
master playlist.

Each tier of the ladder is encoded by its own ffmpeg run so a failed tier can
be retried (or, in batch mode, resumed) without redoing the others. Output
layout inside ``output_dir``:

    <base>_<tier>.m3u8          tier playlist
    <base>_<tier>_NNN.ts        tier segments
    <base>.m3u8                 master playlist (written last)
"""

import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from config import (
    AUDIO_SAMPLE_RATE,
    ENCODE_CRF,
    ENCODE_GOP_SIZE,
    ENCODE_PRESET,
    ENCODE_THREADS,
    ENCODE_TIMEOUT,
    FFMPEG_PATH,
    FFPROBE_PATH,
    HLS_SEGMENT_DURATION,
    MAX_SOURCE_DURATION,
    PROBE_TIMEOUT,
    RENDITION_LADDER,
)
from worker.assets import master_playlist_name, tier_playlist_name, tier_segment_pattern
from worker.errors import EncodeError, InvalidSourceError, truncate_error
from worker.process import ProcessRunner

logger = logging.getLogger(__name__)


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize video duration from ffprobe.

    Raises:
        ValueError: If duration is invalid, missing, or out of acceptable range
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    # Catch corrupted metadata
    if duration > MAX_SOURCE_DURATION:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_SOURCE_DURATION})")

    return float(duration)


async def probe_source(
    runner: ProcessRunner,
    path: Path,
    ffprobe_path: str = FFPROBE_PATH,
    timeout: float = PROBE_TIMEOUT,
) -> Dict[str, Any]:
    """Get video metadata using ffprobe.

    Returns:
        Dictionary with video metadata (width, height, duration, codec)

    Raises:
        InvalidSourceError: If ffprobe fails, finds no video stream, or reports no usable duration
    """
    cmd = [ffprobe_path, "-v", "quiet", "-print_format", "json", "-show_format", "-show_streams", str(path)]
    result = await runner.run(cmd, timeout=timeout)
    if result.timed_out:
        raise InvalidSourceError(f"ffprobe timed out after {timeout}s")
    if result.returncode != 0:
        raise InvalidSourceError(f"ffprobe failed: {truncate_error(result.stderr) or 'exit ' + str(result.returncode)}")

    try:
        data = json.loads(result.stdout)
    except ValueError:
        raise InvalidSourceError("ffprobe returned malformed JSON")

    video_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video":
            video_stream = stream
            break
    if not video_stream:
        raise InvalidSourceError("No video stream found")

    try:
        duration = validate_duration(data.get("format", {}).get("duration"))
    except ValueError as e:
        raise InvalidSourceError(str(e))

    return {
        "width": int(video_stream.get("width", 0)),
        "height": int(video_stream.get("height", 0)),
        "duration": duration,
        "codec": video_stream.get("codec_name", "unknown"),
    }


class RenditionEncoder:
    """Builds and runs the ffmpeg commands for a rendition ladder."""

    def __init__(
        self,
        runner: ProcessRunner,
        ladder: Sequence[dict] = RENDITION_LADDER,
        segment_duration: int = HLS_SEGMENT_DURATION,
        ffmpeg_path: str = FFMPEG_PATH,
        timeout: float = ENCODE_TIMEOUT,
    ):
        self.runner = runner
        # Master playlist order follows the ladder, so keep it ascending
        self.ladder = sorted(ladder, key=lambda tier: (tier["height"], tier["bitrate"]))
        self.segment_duration = segment_duration
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout or None

    @property
    def tier_names(self) -> List[str]:
        return [tier["name"] for tier in self.ladder]

    def get_tier(self, name: str) -> dict:
        for tier in self.ladder:
            if tier["name"] == name:
                return tier
        raise KeyError(name)

    def build_tier_command(self, source: Path, output_dir: Path, base_name: str, tier: dict) -> List[str]:
        width, height = tier["width"], tier["height"]
        video_filter = (
            f"scale=w={width}:h={height}:force_original_aspect_ratio=decrease,"
            "pad=ceil(iw/2)*2:ceil(ih/2)*2"
        )
        cmd = [self.ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error"]
        if ENCODE_THREADS:
            cmd += ["-threads", str(ENCODE_THREADS)]
        cmd += [
            "-i", str(source),
            "-preset", ENCODE_PRESET,
            "-vf", video_filter,
            "-c:a", "aac",
            "-ar", str(AUDIO_SAMPLE_RATE),
            "-b:a", f"{tier['audio_bitrate']}k",
            "-c:v", "h264",
            "-profile:v", tier["profile"],
            "-crf", str(ENCODE_CRF),
            "-g", str(ENCODE_GOP_SIZE),
            "-keyint_min", str(ENCODE_GOP_SIZE),
            "-sc_threshold", "0",
            "-b:v", f"{tier['bitrate']}k",
            "-maxrate", f"{tier['maxrate']}k",
            "-bufsize", f"{tier['bufsize']}k",
            "-hls_time", str(self.segment_duration),
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", str(output_dir / tier_segment_pattern(base_name, tier["name"])),
            str(output_dir / tier_playlist_name(base_name, tier["name"])),
        ]
        return cmd

    async def encode_tier(self, source: Path, output_dir: Path, base_name: str, tier: dict) -> Path:
        """Encode one tier. Returns the tier playlist path.

        Raises:
            EncodeError: If ffmpeg exits non-zero or times out
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.build_tier_command(source, output_dir, base_name, tier)
        logger.info(f"Encoding {base_name} {tier['name']}")
        result = await self.runner.run(cmd, timeout=self.timeout)
        if result.timed_out:
            raise EncodeError(f"ffmpeg timed out encoding {tier['name']}", tier=tier["name"], stderr=result.stderr)
        if result.returncode != 0:
            raise EncodeError(
                f"ffmpeg exited with code {result.returncode} encoding {tier['name']}: {truncate_error(result.stderr, 200)}",
                tier=tier["name"],
                stderr=result.stderr,
            )
        return output_dir / tier_playlist_name(base_name, tier["name"])

    def build_master_playlist(self, base_name: str, tiers: Optional[Sequence[dict]] = None) -> str:
        lines = ["#EXTM3U"]
        for tier in tiers if tiers is not None else self.ladder:
            lines.append(
                f"#EXT-X-STREAM-INF:BANDWIDTH={tier['bitrate'] * 1000},RESOLUTION={tier['width']}x{tier['height']}"
            )
            lines.append(tier_playlist_name(base_name, tier["name"]))
        return "\n".join(lines) + "\n"

    def write_master_playlist(self, output_dir: Path, base_name: str) -> Path:
        master_path = output_dir / master_playlist_name(base_name)
        tmp_path = master_path.with_suffix(".m3u8.tmp")
        tmp_path.write_text(self.build_master_playlist(base_name), encoding="utf-8")
        tmp_path.replace(master_path)
        return master_path

    async def encode(self, source: Path, output_dir: Path, base_name: str) -> Path:
        """Encode every tier of the ladder, then write the master playlist.

        The source file is only read. Returns the master playlist path.

        Raises:
            EncodeError: On the first tier that fails
        """
        for tier in self.ladder:
            await self.encode_tier(source, output_dir, base_name, tier)
        master = self.write_master_playlist(output_dir, base_name)
        logger.info(f"Wrote master playlist {master}")
        return master
