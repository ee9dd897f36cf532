"""Tests for the processed-state store."""

import json
import logging

from store.processed_state import ProcessedStateStore


class TestProcessedStateStore:
    def test_missing_file_starts_empty(self, tmp_path):
        store = ProcessedStateStore(tmp_path / "state.json")
        assert len(store) == 0
        assert store.get("clip.mp4") is None

    def test_record_persists_across_instances(self, tmp_path):
        """Entries survive a restart."""
        path = tmp_path / "state.json"
        store = ProcessedStateStore(path)
        store.record("clip.mp4", 1024, 1_700_000_000_000_000_000, "/hls/clip.m3u8")

        reloaded = ProcessedStateStore(path)
        entry = reloaded.get("clip.mp4")
        assert entry is not None
        assert entry.size == 1024
        assert entry.mtime_ns == 1_700_000_000_000_000_000
        assert entry.pointer == "/hls/clip.m3u8"
        assert entry.processed_at

    def test_is_current_requires_size_and_mtime_match(self, tmp_path):
        store = ProcessedStateStore(tmp_path / "state.json")
        store.record("clip.mp4", 1024, 5, "/hls/clip.m3u8")

        assert store.is_current("clip.mp4", 1024, 5) is True
        assert store.is_current("clip.mp4", 1025, 5) is False
        assert store.is_current("clip.mp4", 1024, 6) is False
        assert store.is_current("other.mp4", 1024, 5) is False

    def test_forget(self, tmp_path):
        path = tmp_path / "state.json"
        store = ProcessedStateStore(path)
        store.record("clip.mp4", 1, 1, "/hls/clip.m3u8")

        assert store.forget("clip.mp4") is True
        assert store.forget("clip.mp4") is False
        assert "clip.mp4" not in ProcessedStateStore(path)

    def test_clear_removes_file(self, tmp_path):
        path = tmp_path / "state.json"
        store = ProcessedStateStore(path)
        store.record("clip.mp4", 1, 1, "/hls/clip.m3u8")

        store.clear()
        assert not path.exists()
        assert len(store) == 0

    def test_corrupt_file_treated_as_empty(self, tmp_path, caplog):
        """A truncated state file only costs redundant work."""
        path = tmp_path / "state.json"
        path.write_text('{"clip.mp4": {"size": 1')

        with caplog.at_level(logging.WARNING):
            store = ProcessedStateStore(path)

        assert len(store) == 0
        assert "unreadable" in caplog.text

    def test_malformed_entry_dropped(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(
            json.dumps(
                {
                    "good.mp4": {"size": 1, "mtime_ns": 2, "pointer": "/hls/good.m3u8", "processed_at": "x"},
                    "bad.mp4": {"size": 1},
                }
            )
        )
        store = ProcessedStateStore(path)
        assert "good.mp4" in store
        assert "bad.mp4" not in store

    def test_write_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "state.json"
        store = ProcessedStateStore(path)
        for i in range(3):
            store.record(f"clip{i}.mp4", i, i, f"/hls/clip{i}.m3u8")

        assert sorted(p.name for p in tmp_path.iterdir()) == ["state.json"]
        assert set(json.loads(path.read_text())) == {"clip0.mp4", "clip1.mp4", "clip2.mp4"}
