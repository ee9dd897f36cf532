"""Tests for source probing and rendition encoding."""

import pytest

from tests.fixtures.sample_videos import FakeRunner
from worker.encoder import RenditionEncoder, probe_source, validate_duration
from worker.errors import EncodeError, InvalidSourceError
from worker.process import ProcessResult


class TestValidateDuration:
    def test_accepts_numeric_strings(self):
        assert validate_duration("12.5") == 12.5

    @pytest.mark.parametrize("value", [None, "abc", 0, -1, float("nan"), float("inf"), 10**9])
    def test_rejects_unusable_values(self, value):
        with pytest.raises(ValueError):
            validate_duration(value)


class TestProbeSource:
    async def test_returns_metadata(self, tmp_path):
        info = await probe_source(FakeRunner(duration=42.0), tmp_path / "clip.mp4")
        assert info == {"width": 1920, "height": 1080, "duration": 42.0, "codec": "h264"}

    async def test_zero_duration_is_invalid(self, tmp_path):
        """A source whose probed duration is not positive is rejected."""
        with pytest.raises(InvalidSourceError, match="must be positive"):
            await probe_source(FakeRunner(duration=0), tmp_path / "clip.mp4")

    async def test_missing_duration_is_invalid(self, tmp_path):
        with pytest.raises(InvalidSourceError, match="duration"):
            await probe_source(FakeRunner(duration=None), tmp_path / "clip.mp4")

    async def test_ffprobe_failure_is_invalid(self, tmp_path):
        runner = FakeRunner()
        runner.probe_fails = True
        with pytest.raises(InvalidSourceError, match="ffprobe failed"):
            await probe_source(runner, tmp_path / "clip.mp4")

    async def test_no_video_stream(self, tmp_path):
        class AudioOnly(FakeRunner):
            async def run(self, cmd, timeout=None):
                return ProcessResult(0, stdout='{"streams": [{"codec_type": "audio"}], "format": {"duration": "3"}}')

        with pytest.raises(InvalidSourceError, match="No video stream"):
            await probe_source(AudioOnly(), tmp_path / "clip.mp4")


class TestBuildTierCommand:
    def test_command_for_360p(self, tmp_path):
        encoder = RenditionEncoder(FakeRunner(), ffmpeg_path="ffmpeg")
        tier = encoder.get_tier("360p")

        cmd = encoder.build_tier_command(tmp_path / "clip.mp4", tmp_path / "out", "clip", tier)

        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == str(tmp_path / "clip.mp4")
        assert cmd[cmd.index("-vf") + 1] == (
            "scale=w=640:h=360:force_original_aspect_ratio=decrease,pad=ceil(iw/2)*2:ceil(ih/2)*2"
        )
        assert cmd[cmd.index("-b:v") + 1] == "800k"
        assert cmd[cmd.index("-maxrate") + 1] == "856k"
        assert cmd[cmd.index("-bufsize") + 1] == "1200k"
        assert cmd[cmd.index("-b:a") + 1] == "96k"
        assert cmd[cmd.index("-ar") + 1] == "48000"
        assert cmd[cmd.index("-profile:v") + 1] == "main"
        assert cmd[cmd.index("-hls_time") + 1] == "10"
        assert cmd[cmd.index("-hls_playlist_type") + 1] == "vod"
        assert cmd[cmd.index("-hls_segment_filename") + 1] == str(tmp_path / "out" / "clip_360p_%03d.ts")
        assert cmd[-1] == str(tmp_path / "out" / "clip_360p.m3u8")

    def test_segment_duration_is_configurable(self, tmp_path):
        encoder = RenditionEncoder(FakeRunner(), segment_duration=6)
        cmd = encoder.build_tier_command(tmp_path / "a.mp4", tmp_path, "a", encoder.get_tier("1080p"))
        assert cmd[cmd.index("-hls_time") + 1] == "6"
        assert cmd[cmd.index("-profile:v") + 1] == "high"


class TestMasterPlaylist:
    def test_exact_format(self):
        encoder = RenditionEncoder(FakeRunner())
        assert encoder.build_master_playlist("clip") == (
            "#EXTM3U\n"
            "#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360\n"
            "clip_360p.m3u8\n"
            "#EXT-X-STREAM-INF:BANDWIDTH=2800000,RESOLUTION=1280x720\n"
            "clip_720p.m3u8\n"
            "#EXT-X-STREAM-INF:BANDWIDTH=5000000,RESOLUTION=1920x1080\n"
            "clip_1080p.m3u8\n"
        )

    def test_ladder_sorted_ascending(self):
        ladder = [
            {"name": "hi", "width": 1920, "height": 1080, "bitrate": 5000},
            {"name": "lo", "width": 640, "height": 360, "bitrate": 800},
        ]
        encoder = RenditionEncoder(FakeRunner(), ladder=ladder)
        assert encoder.tier_names == ["lo", "hi"]


class TestEncode:
    async def test_writes_all_tiers_then_master(self, tmp_path):
        runner = FakeRunner()
        encoder = RenditionEncoder(runner)
        source = tmp_path / "clip.mp4"
        source.write_bytes(b"source")
        output_dir = tmp_path / "hls" / "clip"

        master = await encoder.encode(source, output_dir, "clip")

        assert master == output_dir / "clip.m3u8"
        assert master.exists()
        for tier in ("360p", "720p", "1080p"):
            assert (output_dir / f"clip_{tier}.m3u8").exists()
            assert (output_dir / f"clip_{tier}_000.ts").exists()
        assert len(runner.encode_commands) == 3
        assert source.read_bytes() == b"source"

    async def test_nonzero_exit_raises_and_skips_master(self, tmp_path):
        runner = FakeRunner()
        runner.fail_tiers = {"720p"}
        encoder = RenditionEncoder(runner)
        output_dir = tmp_path / "clip"

        with pytest.raises(EncodeError) as exc_info:
            await encoder.encode(tmp_path / "clip.mp4", output_dir, "clip")

        assert exc_info.value.tier == "720p"
        assert "Error while encoding 720p" in exc_info.value.stderr
        assert not (output_dir / "clip.m3u8").exists()

    async def test_timeout_raises(self, tmp_path):
        class Slow(FakeRunner):
            async def run(self, cmd, timeout=None):
                return ProcessResult(-9, stderr="ffmpeg timed out", timed_out=True)

        encoder = RenditionEncoder(Slow(), timeout=5)
        with pytest.raises(EncodeError, match="timed out"):
            await encoder.encode(tmp_path / "clip.mp4", tmp_path / "clip", "clip")
