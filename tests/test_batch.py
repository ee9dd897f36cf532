"""Tests for one-shot batch conversion."""

import os

from tests.fixtures.owning_tables import cinematography_videos, get_pointer, hero_video, insert_cinematography, insert_hero
from tests.fixtures.sample_videos import create_sample_rendition, create_source_video, write_tier
from worker.batch import BatchConverter


def shift_mtimes(directory, offset_ns):
    for entry in directory.iterdir():
        st = entry.stat()
        os.utime(entry, ns=(st.st_atime_ns, st.st_mtime_ns + offset_ns))


def tiers_encoded(runner):
    return [cmd[-1].rsplit("_", 1)[-1].replace(".m3u8", "") for cmd in runner.encode_commands]


class TestBatchConverter:
    async def test_converts_every_row(self, test_database, test_storage, orchestrator, fake_runner):
        create_source_video(test_storage["uploads"] / "clip.mp4")
        create_source_video(test_storage["uploads"] / "2024" / "reel.mov")
        hero_id = await insert_hero(test_database, "/uploads/clip.mp4")
        cine_id = await insert_cinematography(test_database, "/uploads/2024/reel.mov")

        report = await BatchConverter(orchestrator).run()

        assert report.summary() == "2 converted, 0 skipped, 0 failed"
        assert await get_pointer(test_database, hero_video, hero_id) == "/hls/clip.m3u8"
        assert await get_pointer(test_database, cinematography_videos, cine_id) == "/hls/reel.m3u8"
        assert (test_storage["hls"] / "reel" / "reel.m3u8").exists()
        assert orchestrator.processed.get("reel.mov") is not None

    async def test_resumes_from_valid_tiers(self, test_database, test_storage, orchestrator, fake_runner):
        """Tiers already encoded from the current source are kept."""
        create_source_video(test_storage["uploads"] / "clip.mp4")
        output_dir = test_storage["hls"] / "clip"
        write_tier(output_dir, "clip", "360p")
        shift_mtimes(output_dir, 10**9)
        await insert_hero(test_database, "/uploads/clip.mp4")

        report = await BatchConverter(orchestrator).run()

        assert len(report.converted) == 1
        assert tiers_encoded(fake_runner) == ["720p", "1080p"]
        assert (output_dir / "clip.m3u8").exists()

    async def test_output_older_than_source_is_redone(self, test_database, test_storage, orchestrator, fake_runner):
        create_source_video(test_storage["uploads"] / "clip.mp4")
        output_dir = test_storage["hls"] / "clip"
        write_tier(output_dir, "clip", "360p")
        shift_mtimes(output_dir, -(10**9))
        await insert_hero(test_database, "/uploads/clip.mp4")

        await BatchConverter(orchestrator).run()

        assert tiers_encoded(fake_runner) == ["360p", "720p", "1080p"]

    async def test_skips_rows_with_valid_rendition(self, test_database, test_storage, orchestrator, fake_runner):
        create_source_video(test_storage["uploads"] / "clip.mp4")
        create_sample_rendition(test_storage["hls"] / "clip", "clip")
        await insert_hero(test_database, "/uploads/clip.mp4", "/hls/clip.m3u8")

        report = await BatchConverter(orchestrator).run()

        assert report.skipped == ["hero_video#1"]
        assert fake_runner.commands == []

    async def test_missing_file_is_skipped(self, test_database, orchestrator):
        await insert_hero(test_database, "/uploads/missing.mp4")

        report = await BatchConverter(orchestrator).run()

        assert report.summary() == "0 converted, 1 skipped, 0 failed"

    async def test_failure_is_reported_and_batch_continues(self, test_database, test_storage, orchestrator, fake_runner):
        create_source_video(test_storage["uploads"] / "bad.mp4")
        create_source_video(test_storage["uploads"] / "good.mp4")
        bad_id = await insert_hero(test_database, "/uploads/bad.mp4")
        await insert_hero(test_database, "/uploads/good.mp4")
        fake_runner.before_encode = lambda d: fake_runner.fail_tiers.add("1080p") if d.name == "bad" else fake_runner.fail_tiers.clear()

        report = await BatchConverter(orchestrator).run()

        assert report.failed == [f"hero_video#{bad_id}"]
        assert len(report.converted) == 1
        assert await get_pointer(test_database, hero_video, bad_id) is None
        assert orchestrator.processed.get("bad.mp4") is None
