"""Recording controller: the single entry point used by the HTTP API and daemon.

The controller is an explicit state machine::

    Idle --start_session()--> Recording(session_id, capture, processor)
    Recording --stop_session()--> Idle

Starting while Recording is rejected with a failure result. All public
operations return plain dicts with a ``success`` flag instead of raising.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Union

from .capture import ScreenCapture
from .capture_loop import CaptureScheduler
from .combiner import ResultCombiner
from .config import Config
from .models import AnalysisType, Session, format_timestamp, parse_timestamp, session_id_for
from .orchestrator import SessionAnalyzer
from .providers import ProviderRegistry
from .scheduler import TieredProcessor
from .schemas import decode_payload
from .storage import FrameStore

logger = logging.getLogger(__name__)

SETTING_PROVIDER = "ai_provider"
SETTING_API_KEY = "api_key"

_TIMELINE_TYPES = (
    AnalysisType.DISPLAY.value,
    AnalysisType.FINAL.value,
    AnalysisType.SESSION_SUMMARY.value,
)


@dataclass
class Idle:
    pass


@dataclass
class Recording:
    session_id: str
    capture: CaptureScheduler
    processor: TieredProcessor


class RecordingController:
    """Owns the recording state and wires the pipeline together.

    Attributes:
        config: Loaded Config
        store: FrameStore for sessions, frames, analysis and settings
        registry: ProviderRegistry with the current analysis provider
        analyzer: SessionAnalyzer shared by all sessions
        combiner: ResultCombiner for display consolidation
    """

    def __init__(self, config: Config, store: Optional[FrameStore] = None,
                 capture: Optional[ScreenCapture] = None,
                 registry: Optional[ProviderRegistry] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config
        self.clock = clock
        self.store = store or FrameStore(config.storage.db_path, config.storage.recordings_dir)
        self.capture = capture or ScreenCapture(
            format=config.capture.format,
            quality=config.capture.quality,
            monitor=config.capture.monitor,
        )
        self.registry = registry or ProviderRegistry.from_config(config.provider)
        self.analyzer = SessionAnalyzer(self.store, self.registry, config.analysis, clock=clock)
        self.combiner = ResultCombiner(
            self.registry, config.processing.period_label, clock=clock
        )
        self._state: Union[Idle, Recording] = Idle()
        self._lock = threading.RLock()
        self._finalizing: Set[str] = set()

    @property
    def state(self) -> Union[Idle, Recording]:
        return self._state

    @property
    def is_recording(self) -> bool:
        return isinstance(self._state, Recording)

    def recover_interrupted(self) -> List[str]:
        """Close sessions left active by a previous run and process their frames."""
        closed = self.store.mark_interrupted_sessions(format_timestamp(self.clock()))
        for session_id in closed:
            logger.info(f"Recovering interrupted session {session_id}")
            try:
                self._new_processor(session_id).process_remaining()
            except (sqlite3.Error, RuntimeError) as e:
                logger.error(f"Final processing failed for interrupted session {session_id}: {e}")
        return closed

    def _new_session_id(self) -> str:
        base = session_id_for(self.clock())
        session_id = base
        suffix = 1
        while self.store.session_exists(session_id):
            session_id = f"{base}_{suffix}"
            suffix += 1
        return session_id

    def _new_processor(self, session_id: str) -> TieredProcessor:
        return TieredProcessor(
            session_id, self.store, self.analyzer, self.combiner,
            self.config.processing, clock=self.clock,
        )

    def start_session(self) -> Dict:
        with self._lock:
            if isinstance(self._state, Recording):
                logger.info("Recording is already active")
                return {"success": False, "message": "Recording already active"}

            try:
                session_id = self._new_session_id()
                self.store.create_session(session_id, format_timestamp(self.clock()))
            except (sqlite3.Error, RuntimeError) as e:
                logger.error(f"Failed to start recording: {e}")
                return {"success": False, "message": "Failed to start recording"}

            capture = CaptureScheduler(
                session_id, self.store, self.capture, self.store.session_dir(session_id),
                interval=self.config.capture.interval_seconds, clock=self.clock,
            )
            processor = self._new_processor(session_id)

            capture.start()
            if self.config.processing.enabled:
                processor.start()

            self._state = Recording(session_id, capture, processor)
            logger.info(f"Recording started - session: {session_id}")
            return {
                "success": True,
                "message": "Recording started successfully",
                "session_id": session_id,
            }

    def stop_session(self) -> Dict:
        """Stop recording, then analyze the frames the tiers have not consumed.

        The final pass runs after the controller lock is released, so a new
        session can start while it makes provider calls. A storage failure
        during the final pass is logged; the stop still succeeds.
        """
        with self._lock:
            state = self._state
            if not isinstance(state, Recording):
                logger.info("No active recording to stop")
                return {"success": False, "message": "No active recording"}

            frame_count = state.capture.stop()
            state.processor.stop_timers()
            self._state = Idle()
            self._finalizing.add(state.session_id)

        result = {
            "success": True,
            "message": "Recording stopped successfully",
            "session_id": state.session_id,
            "frame_count": frame_count,
        }
        try:
            self.store.finalize_session(
                state.session_id, format_timestamp(self.clock()), frame_count
            )
            state.processor.process_remaining()
        except (sqlite3.Error, RuntimeError) as e:
            logger.error(f"Final processing failed for session {state.session_id}: {e}")
            result["message"] = "Recording stopped; final processing failed"
        finally:
            self._finalizing.discard(state.session_id)

        logger.info(f"Recording stopped - captured {frame_count} frames")
        return result

    def get_status(self) -> Dict:
        state = self._state
        if isinstance(state, Recording):
            return {
                "active": True,
                "session_id": state.session_id,
                "frame_count": state.capture.frame_count,
            }
        return {"active": False, "session_id": None, "frame_count": 0}

    def list_sessions(self, limit: int = 50, offset: int = 0) -> List[Dict]:
        return [s.to_dict() for s in self.store.list_sessions(limit, offset)]

    def trigger_analysis(self, session_id: Optional[str] = None) -> Dict:
        """Analyze a whole session on demand.

        Without ``session_id``, picks the oldest completed session that has
        no analysis records.
        """
        if session_id is None:
            unanalyzed = [
                s for s in self.store.get_unanalyzed_sessions()
                if s.session_id not in self._finalizing
            ]
            if not unanalyzed:
                return {"success": False, "message": "No sessions to analyze"}
            session_id = unanalyzed[0].session_id
            logger.info(f"Found unanalyzed session {session_id} ({len(unanalyzed)} total)")
        else:
            session = self.store.get_session(session_id)
            if session is None:
                return {"success": False, "message": f"Session {session_id} not found"}
            if not session.is_completed:
                return {"success": False, "message": "Session is still recording"}
            if session_id in self._finalizing:
                return {"success": False, "message": "Session is still being processed"}

        return self.analyzer.analyze_session(session_id)

    def get_session_analyses(self, session_id: str) -> List[Dict]:
        records = []
        for record in self.store.get_analyses_for_session(session_id):
            item = record.to_dict()
            decoded = decode_payload(record.result)
            item["payload"] = decoded.value.model_dump(exclude_none=True) if decoded.ok else None
            records.append(item)
        return records

    def get_timeline(self, limit: int = 50, offset: int = 0) -> List[Dict]:
        """Sessions newest first, each with its best available analysis.

        The newest decodable display, final or session summary record is
        used; a session with only background records shows the newest of
        those.
        """
        return [self._timeline_item(s) for s in self.store.list_sessions(limit, offset)]

    def _timeline_item(self, session: Session) -> Dict:
        records = self.store.get_analyses_for_session(session.session_id)
        preferred = [r for r in records if r.analysis_type in _TIMELINE_TYPES] or records

        payload = None
        for record in reversed(preferred):
            decoded = decode_payload(record.result)
            if decoded.ok:
                payload = decoded.value
                break
            logger.warning(f"Skipping analysis {record.id} for timeline: {decoded.error}")

        if not session.is_completed:
            analysis_status = "Recording"
        elif payload is not None:
            analysis_status = "Analyzed"
        else:
            analysis_status = "Analysis Pending"

        duration = None
        if session.end_time:
            elapsed = parse_timestamp(session.end_time) - parse_timestamp(session.start_time)
            duration = int(elapsed.total_seconds())

        return {
            "session_id": session.session_id,
            "title": payload.title if payload else f"Recording Session: {session.session_id}",
            "description": payload.summary if payload else f"Captured {session.frame_count} frames",
            "time_range": f"{session.start_time} - {session.end_time or 'Active'}",
            "start_time": session.start_time,
            "end_time": session.end_time,
            "duration": duration,
            "status": session.status,
            "analysis_status": analysis_status,
            "frame_count": session.frame_count,
            "summary": payload.summary if payload else None,
            "segments": [s.model_dump(exclude_none=True) for s in payload.segments] if payload else [],
            "has_analysis": payload is not None,
        }

    # Settings

    def set_provider(self, name: str) -> bool:
        return self.registry.set_provider(name)

    def set_credential(self, value: Optional[str]) -> None:
        self.registry.set_credential(value)

    def load_settings(self) -> None:
        """Apply the stored provider selection and credential."""
        try:
            settings = self.store.get_all_settings()
        except (sqlite3.Error, RuntimeError) as e:
            logger.error(f"Failed to load settings: {e}")
            return

        if settings.get(SETTING_PROVIDER):
            self.set_provider(settings[SETTING_PROVIDER])
        if settings.get(SETTING_API_KEY):
            self.set_credential(settings[SETTING_API_KEY])
        logger.info("AI provider initialized from saved settings")

    def get_settings(self) -> Dict:
        settings = {}
        for key, value in self.store.get_all_settings().items():
            if value == "true":
                settings[key] = True
            elif value == "false":
                settings[key] = False
            else:
                settings[key] = value
        return settings

    def save_settings(self, settings: Dict) -> Dict:
        if settings.get(SETTING_PROVIDER) and settings[SETTING_PROVIDER] not in self.registry.providers:
            return {"success": False, "message": f"Unknown AI provider: {settings[SETTING_PROVIDER]}"}

        for key, value in settings.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            self.store.set_setting(key, str(value))

        if settings.get(SETTING_PROVIDER):
            self.set_provider(settings[SETTING_PROVIDER])
        if settings.get(SETTING_API_KEY):
            self.set_credential(settings[SETTING_API_KEY])
        return {"success": True}

    # Maintenance

    def delete_session(self, session_id: str) -> Dict:
        state = self._state
        if isinstance(state, Recording) and state.session_id == session_id:
            return {"success": False, "message": "Cannot delete the active session"}
        if session_id in self._finalizing:
            return {"success": False, "message": "Session is still being processed"}
        if not self.store.session_exists(session_id):
            return {"success": False, "message": f"Session {session_id} not found"}
        result = self.store.delete_session(session_id)
        return {"success": True, **result}

    def cleanup_old_data(self, retention_days: Optional[int] = None) -> Dict:
        """Delete completed sessions that started more than ``retention_days`` ago."""
        if retention_days is None:
            retention_days = self.config.storage.retention_days
        cutoff = format_timestamp(self.clock() - timedelta(days=retention_days))
        session_ids = self.store.get_session_ids_started_before(cutoff)
        for session_id in session_ids:
            self.store.delete_session(session_id)
        logger.info(f"Cleaned up {len(session_ids)} old sessions")
        return {"success": True, "deleted_sessions": len(session_ids)}

    def keep_only_processed(self) -> Dict:
        """Drop leftover frames of sessions that already have analysis."""
        active = self._state.session_id if isinstance(self._state, Recording) else None
        session_ids = [sid for sid in self.store.get_analyzed_session_ids() if sid != active]
        deleted = 0
        for session_id in session_ids:
            frames = self.store.get_frames_for_session(session_id)
            rows, _ = self.store.delete_frames(frames)
            deleted += rows
            self.store.remove_session_dir(session_id)
        logger.info(f"Cleaned up {deleted} frames for {len(session_ids)} analyzed sessions")
        return {"success": True, "cleaned_sessions": len(session_ids), "deleted_frames": deleted}

    def get_stats(self) -> Dict:
        stats = self.store.get_stats()
        unanalyzed = self.store.get_unanalyzed_sessions()
        stats["unanalyzed_sessions"] = len(unanalyzed)
        stats["unanalyzed_session_ids"] = [s.session_id for s in unanalyzed]
        return stats

    def shutdown(self) -> None:
        if self.is_recording:
            self.stop_session()
