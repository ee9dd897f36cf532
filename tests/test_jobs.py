"""Tests for the job model and its transition table."""

from pathlib import Path

import pytest

from config import OwningColumn
from store.owners import OwningRecord
from worker.jobs import ALLOWED_TRANSITIONS, TERMINAL_STEPS, InvalidJobTransition, Job, JobKind, JobStep, JobTrigger


def make_job(name="clip.mp4", **kwargs):
    return Job(path=Path("/uploads") / name, key=name.lower(), **kwargs)


class TestTransitions:
    def test_happy_path(self):
        job = make_job()
        for step in (
            JobStep.STABILITY_CHECK,
            JobStep.VALIDATING_SOURCE,
            JobStep.ENCODING,
            JobStep.VALIDATING_OUTPUT,
            JobStep.PERSISTING_POINTER,
            JobStep.COMPLETED,
        ):
            job.advance(step)

        assert job.is_terminal
        assert job.history[0] == JobStep.QUEUED
        assert len(job.history) == 6

    def test_skipping_encode_is_allowed(self):
        job = make_job()
        job.advance(JobStep.STABILITY_CHECK)
        job.advance(JobStep.VALIDATING_SOURCE)
        job.advance(JobStep.PERSISTING_POINTER)
        assert job.step == JobStep.PERSISTING_POINTER

    def test_illegal_transition_raises(self):
        job = make_job()
        with pytest.raises(InvalidJobTransition, match="queued -> completed"):
            job.advance(JobStep.COMPLETED)
        assert job.step == JobStep.QUEUED

    @pytest.mark.parametrize("step", [s for s in JobStep if s not in TERMINAL_STEPS])
    def test_failure_reachable_from_every_live_step(self, step):
        assert JobStep.FAILED in ALLOWED_TRANSITIONS[step]

    def test_terminal_steps_are_final(self):
        job = make_job()
        job.fail("boom")
        assert job.error == "boom"
        with pytest.raises(InvalidJobTransition):
            job.advance(JobStep.QUEUED)


class TestMerge:
    def test_forced_wins_and_owner_filled(self):
        owner = OwningRecord(OwningColumn("hero_video", "video_path", "video_hls_path"), 1, "/uploads/clip.mp4", None)
        queued = make_job()
        duplicate = make_job(kind=JobKind.FORCED, trigger=JobTrigger.DB_SCAN, owner=owner)

        queued.merge(duplicate)

        assert queued.kind == JobKind.FORCED
        assert queued.owner is owner
        assert queued.trigger == JobTrigger.FILESYSTEM

    def test_fresh_duplicate_does_not_downgrade(self):
        queued = make_job(kind=JobKind.FORCED)
        queued.merge(make_job())
        assert queued.kind == JobKind.FORCED

    def test_merge_takes_latest_path(self):
        queued = make_job()
        moved = Job(path=Path("/uploads/archive/clip.mp4"), key="clip.mp4")
        queued.merge(moved)
        assert queued.path == Path("/uploads/archive/clip.mp4")
