"""Tests for the SQLite frame store."""

import sqlite3
from pathlib import Path

import pytest

from flowlog.models import AnalysisType, SessionStatus, format_timestamp
from flowlog.storage import FrameStore


class TestSessions:

    def test_create_and_get_session(self, store, session):
        loaded = store.get_session(session.session_id)
        assert loaded.session_id == "2025-01-06_09-00-00"
        assert loaded.status == SessionStatus.ACTIVE.value
        assert loaded.end_time is None
        assert loaded.stored_frames == 0

    def test_duplicate_session_id_rejected(self, store, session):
        with pytest.raises(sqlite3.IntegrityError):
            store.create_session(session.session_id, session.start_time)

    def test_finalize_session(self, store, session, add_frames, clock):
        add_frames(session.session_id, 2)
        store.finalize_session(session.session_id, format_timestamp(clock()), 2)

        loaded = store.get_session(session.session_id)
        assert loaded.is_completed
        assert loaded.frame_count == 2
        assert loaded.stored_frames == 2
        assert loaded.first_frame_time < loaded.last_frame_time

    def test_list_sessions_newest_first(self, store, clock):
        store.create_session("a", format_timestamp(clock()))
        clock.advance(minutes=1)
        store.create_session("b", format_timestamp(clock()))

        assert [s.session_id for s in store.list_sessions()] == ["b", "a"]
        assert [s.session_id for s in store.list_sessions(limit=1, offset=1)] == ["a"]

    def test_unknown_watermark_column_rejected(self, store, session):
        with pytest.raises(ValueError):
            store.update_watermark(session.session_id, "end_time", "x")

    def test_unanalyzed_sessions_oldest_first(self, store, clock):
        for session_id in ("old", "new", "analyzed"):
            store.create_session(session_id, format_timestamp(clock()))
            store.finalize_session(session_id, format_timestamp(clock()), 0)
            clock.advance(minutes=5)
        store.create_session("still-active", format_timestamp(clock()))
        store.save_analysis("analyzed", AnalysisType.FINAL.value, "{}", format_timestamp(clock()))

        assert [s.session_id for s in store.get_unanalyzed_sessions()] == ["old", "new"]

    def test_mark_interrupted_sessions(self, store, session, add_frames, clock):
        add_frames(session.session_id, 3)

        closed = store.mark_interrupted_sessions(format_timestamp(clock()))

        assert closed == [session.session_id]
        loaded = store.get_session(session.session_id)
        assert loaded.is_completed
        assert loaded.frame_count == 3


class TestFrames:

    def test_frames_since_window(self, store, session, add_frames, clock):
        frames = add_frames(session.session_id, 5)

        window = store.get_frames_since(
            session.session_id, frames[1].timestamp, until=frames[4].timestamp
        )

        assert [f.frame_number for f in window] == [1, 2, 3]

    def test_delete_frames_removes_rows_and_files(self, store, session, add_frames):
        frames = add_frames(session.session_id, 3)
        metadata = Path(frames[0].file_path).with_suffix(".json")
        metadata.write_text("{}")
        frames[0].metadata_path = str(metadata)

        rows, files = store.delete_frames(frames[:2])

        assert (rows, files) == (2, 2)
        assert not Path(frames[0].file_path).exists()
        assert not metadata.exists()
        assert Path(frames[2].file_path).exists()
        assert store.count_frames(session.session_id) == 1

    def test_delete_frames_continues_after_missing_file(self, store, session, add_frames):
        frames = add_frames(session.session_id, 3)
        Path(frames[1].file_path).unlink()

        rows, files = store.delete_frames(frames)

        assert rows == 3
        assert files == 2
        assert store.count_frames() == 0

    def test_delete_frames_empty(self, store):
        assert store.delete_frames([]) == (0, 0)

    def test_remove_session_dir_only_when_empty(self, store, session, add_frames):
        frames = add_frames(session.session_id, 1)

        assert store.remove_session_dir(session.session_id) is False
        store.delete_frames(frames)
        assert store.remove_session_dir(session.session_id) is True
        assert not store.session_dir(session.session_id).exists()


class TestAnalysis:

    def test_analysis_outlives_its_frame(self, store, session, add_frames, clock):
        frames = add_frames(session.session_id, 1)
        record = store.save_analysis(
            session.session_id, AnalysisType.BACKGROUND.value, '{"summary": "x"}',
            format_timestamp(clock()), confidence=0.85, frame_id=frames[0].id,
        )

        store.delete_frames(frames)

        records = store.get_analyses_for_session(session.session_id)
        assert [r.id for r in records] == [record.id]
        assert records[0].frame_id is None

    def test_filter_by_type_and_creation_time(self, store, session, clock):
        first = store.save_analysis(
            session.session_id, AnalysisType.BACKGROUND.value, "{}", format_timestamp(clock())
        )
        clock.advance(minutes=5)
        since = format_timestamp(clock())
        second = store.save_analysis(
            session.session_id, AnalysisType.BACKGROUND.value, "{}", since
        )
        store.save_analysis(session.session_id, AnalysisType.DISPLAY.value, "{}", since)

        background = store.get_analyses_for_session(
            session.session_id, AnalysisType.BACKGROUND.value
        )
        recent = store.get_analyses_for_session(
            session.session_id, AnalysisType.BACKGROUND.value, since=since
        )

        assert [r.id for r in background] == [first.id, second.id]
        assert [r.id for r in recent] == [second.id]
        assert store.has_analysis(session.session_id)


class TestSettingsAndMaintenance:

    def test_settings_upsert(self, store):
        store.set_setting("ai_provider", "gemini")
        store.set_setting("ai_provider", "ollama")

        assert store.get_setting("ai_provider") == "ollama"
        assert store.get_setting("missing", "fallback") == "fallback"
        assert store.get_all_settings() == {"ai_provider": "ollama"}

    def test_delete_session_removes_everything(self, store, session, add_frames, clock):
        add_frames(session.session_id, 2)
        store.save_analysis(session.session_id, AnalysisType.FINAL.value, "{}", format_timestamp(clock()))

        result = store.delete_session(session.session_id)

        assert result == {
            "deleted_sessions": 1,
            "deleted_frames": 2,
            "deleted_files": 2,
            "deleted_analyses": 1,
        }
        assert store.get_session(session.session_id) is None
        assert not store.session_dir(session.session_id).exists()

    def test_stats(self, store, session, add_frames):
        add_frames(session.session_id, 2)

        stats = store.get_stats()

        assert stats["sessions"] == 1
        assert stats["frames"] == 2
        assert stats["analysis"] == 0

    def test_reopen_existing_database(self, store, session):
        reopened = FrameStore(store.db_path, store.recordings_dir)
        assert reopened.session_exists(session.session_id)
