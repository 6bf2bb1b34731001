"""Tests for session analysis: sampling, batching, degradation and persistence."""

import sqlite3
from pathlib import Path

import pytest
import requests

from flowlog.models import AnalysisType
from flowlog.orchestrator import FAILED_SUMMARY, NO_FRAMES_MESSAGE
from flowlog.providers import ProviderRegistry
from flowlog.schemas import END_MARKER, AnalysisResult


class TestAnalyzeFrames:

    def test_empty_input_is_a_failure(self, analyzer, provider):
        outcome = analyzer.analyze_frames("s", [])

        assert outcome.success is False
        assert outcome.message == NO_FRAMES_MESSAGE
        assert provider.calls["analyze_batch"] == 0

    def test_samples_every_fifth_frame_in_batches(self, analyzer, provider, session, add_frames):
        frames = add_frames(session.session_id, 12)

        outcome = analyzer.analyze_frames(session.session_id, frames)

        result = outcome.result
        assert outcome.success
        assert [a.frame_number for a in result.activities] == [0, 5, 10]
        assert provider.calls["analyze_batch"] == 1
        assert result.timing.frame_count == 12
        assert result.timing.processed_frames == 3

    def test_few_activities_get_one_spanning_segment(self, analyzer, provider, session, add_frames):
        frames = add_frames(session.session_id, 10)

        result = analyzer.analyze_frames(session.session_id, frames).result

        assert provider.calls["segment"] == 0
        assert len(result.segments) == 1
        assert result.segments[0].start == "00:00"
        assert result.segments[0].end == END_MARKER
        assert result.segments[0].description == result.summary

    def test_many_activities_are_segmented(self, analyzer, provider, session, add_frames):
        frames = add_frames(session.session_id, 30)

        result = analyzer.analyze_frames(session.session_id, frames).result

        assert len(result.activities) == 6
        assert provider.calls["analyze_batch"] == 2
        assert provider.calls["segment"] == 1
        assert [s.description for s in result.segments] == ["Editing", "Reviewing"]
        assert result.title == "Focused Editing Session"

    @pytest.mark.parametrize("failing", ["analyze_batch", "summarize", "title_for", "segment"])
    def test_provider_failure_degrades(self, analyzer, provider, session, add_frames, failing):
        frames = add_frames(session.session_id, 30)
        provider.fail_on.add(failing)

        outcome = analyzer.analyze_frames(session.session_id, frames)

        result = outcome.result
        assert outcome.success
        assert result.summary == FAILED_SUMMARY
        assert result.title
        assert len(result.segments) >= 1
        assert f"{failing} failed" in result.error

    def test_unreadable_batch_gets_placeholder(self, analyzer, provider, session, add_frames):
        frames = add_frames(session.session_id, 1)
        Path(frames[0].file_path).write_bytes(b"not an image")

        result = analyzer.analyze_frames(session.session_id, frames).result

        assert provider.calls["analyze_batch"] == 0
        assert result.activities[0].activity == "No valid frames found"
        assert result.error is None

    def test_provider_timeout_degrades(self, store, config, clock, session, add_frames, monkeypatch):
        from flowlog.orchestrator import SessionAnalyzer
        from flowlog.providers import OllamaProvider

        def slow_post(*args, **kwargs):
            raise requests.exceptions.Timeout("read timed out")

        monkeypatch.setattr(requests, "post", slow_post)
        registry = ProviderRegistry({"ollama": OllamaProvider(timeout=1)}, "ollama")
        analyzer = SessionAnalyzer(store, registry, config.analysis, clock=clock)
        frames = add_frames(session.session_id, 2)

        result = analyzer.analyze_frames(session.session_id, frames).result

        assert result.summary == FAILED_SUMMARY
        assert "timed out" in result.error
        assert result.segments


class TestProcessBatch:

    def test_persists_then_deletes_frames(self, analyzer, store, session, add_frames):
        frames = add_frames(session.session_id, 3)

        record = analyzer.process_batch(session.session_id, frames, AnalysisType.BACKGROUND)

        assert record.analysis_type == "background_5min"
        assert record.confidence == 0.85
        assert store.count_frames(session.session_id) == 0
        assert not any(Path(f.file_path).exists() for f in frames)
        payload = AnalysisResult.model_validate_json(record.result)
        assert payload.session_id == session.session_id

    def test_degraded_result_is_still_stored(self, analyzer, provider, store, session, add_frames):
        frames = add_frames(session.session_id, 3)
        provider.fail_on.add("summarize")

        record = analyzer.process_batch(session.session_id, frames, AnalysisType.FINAL)

        assert AnalysisResult.model_validate_json(record.result).summary == FAILED_SUMMARY
        assert store.count_frames(session.session_id) == 0

    def test_no_frames_no_record(self, analyzer, store, session):
        assert analyzer.process_batch(session.session_id, [], AnalysisType.BACKGROUND) is None
        assert not store.has_analysis(session.session_id)


class TestAnalyzeSession:

    def test_analyzes_all_frames_once(self, analyzer, store, session, add_frames):
        add_frames(session.session_id, 4)

        first = analyzer.analyze_session(session.session_id)
        second = analyzer.analyze_session(session.session_id)

        assert first["success"]
        assert first["analysis"]["summary"]
        assert second == {
            "success": False,
            "message": "Session already analyzed",
            "already_analyzed": True,
        }
        records = store.get_analyses_for_session(session.session_id)
        assert [r.analysis_type for r in records] == ["session_summary"]
        assert not store.session_dir(session.session_id).exists()

    def test_session_without_frames(self, analyzer, session):
        result = analyzer.analyze_session(session.session_id)
        assert result == {"success": False, "message": NO_FRAMES_MESSAGE}

    def test_storage_failure_is_reported(self, analyzer, store, session, add_frames, monkeypatch):
        add_frames(session.session_id, 2)

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(store, "save_analysis", locked)

        result = analyzer.analyze_session(session.session_id)

        assert result == {"success": False, "message": "Failed to store analysis"}
        assert store.count_frames(session.session_id) == 2
