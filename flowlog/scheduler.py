"""Tiered processing of an active session.

Two repeating tasks run per recording session:

- background (every ``background_minutes``): analyze the frames captured
  since the last background pass, store a ``background_5min`` record and
  delete those frames
- display (every ``display_minutes``): combine the ``background_5min``
  records created since the last display pass into a ``display_30min``
  record

Window boundaries come from data stored with the session, not from timer
phase: a background fire takes every remaining frame stamped before the
fire time, and a display fire takes the background records created since
``last_display_at``. On stop, the timers are cancelled and every frame still
stored for the session is analyzed as ``final_analysis`` and deleted.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from .combiner import DISPLAY_CONFIDENCE, ResultCombiner
from .models import AnalysisRecord, AnalysisType, format_timestamp
from .orchestrator import SessionAnalyzer
from .storage import FrameStore

logger = logging.getLogger(__name__)


class RepeatingTask:
    """Call ``func`` every ``interval`` seconds on a daemon thread.

    The wait for the next call starts only after the previous call returns,
    so calls never overlap. Exceptions from ``func`` are logged and the task
    keeps running.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], object]):
        self.name = name
        self.interval = interval
        self.func = func
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            logger.warning(f"{self.name} task already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """Stop the task, waiting for an in-flight call to finish."""
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None

    def _run_loop(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.func()
            except Exception as e:
                logger.error(f"{self.name} task failed: {e}", exc_info=True)


class TieredProcessor:
    """Owns the tier timers and watermarks of one recording session.

    Attributes:
        session_id: Session being processed
        store: FrameStore shared with the capture scheduler
        analyzer: SessionAnalyzer for frame analysis
        combiner: ResultCombiner for the display tier
    """

    def __init__(self, session_id: str, store: FrameStore, analyzer: SessionAnalyzer,
                 combiner: ResultCombiner, config,
                 clock: Callable[[], datetime] = datetime.now):
        self.session_id = session_id
        self.store = store
        self.analyzer = analyzer
        self.combiner = combiner
        self.config = config
        self.clock = clock
        self._lock = threading.Lock()
        self._background = RepeatingTask(
            f"background-{session_id}", config.background_minutes * 60, self.run_background_pass
        )
        self._display = RepeatingTask(
            f"display-{session_id}", config.display_minutes * 60, self.run_display_pass
        )

    @property
    def is_running(self) -> bool:
        return self._background.is_running or self._display.is_running

    def start(self):
        logger.info(
            f"Starting tiered processing for {self.session_id} "
            f"({self.config.background_minutes}min background + "
            f"{self.config.display_minutes}min display)"
        )
        self._background.start()
        self._display.start()

    def stop_timers(self):
        """Cancel both tiers; an in-flight pass finishes first."""
        self._background.stop()
        self._display.stop()
        logger.info(f"Tier timers stopped for {self.session_id}")

    def _watermark(self, value: Optional[str]) -> str:
        if value:
            return value
        session = self.store.get_session(self.session_id)
        return session.start_time

    def run_background_pass(self) -> Optional[AnalysisRecord]:
        """Analyze and delete every stored frame stamped before this fire.

        Consumed frames are deleted, so the window starts at the session
        start rather than at ``last_background_at``: a frame stamped before
        the previous fire but inserted after it is picked up here.

        Returns:
            The new ``background_5min`` record, or None when there were no
            new frames.
        """
        with self._lock:
            session = self.store.get_session(self.session_id)
            if session is None:
                logger.warning(f"Background pass: session {self.session_id} not found")
                return None

            fired_at = format_timestamp(self.clock())
            frames = self.store.get_frames_since(self.session_id, session.start_time, until=fired_at)

            if not frames:
                logger.info(f"Background pass: no new frames for {self.session_id}")
                self.store.update_watermark(self.session_id, "last_background_at", fired_at)
                return None

            logger.info(f"Background processing {len(frames)} frames for {self.session_id}")
            record = self.analyzer.process_batch(self.session_id, frames, AnalysisType.BACKGROUND)
            self.store.update_watermark(self.session_id, "last_background_at", fired_at)
            return record

    def run_display_pass(self) -> Optional[AnalysisRecord]:
        """Combine background records created since the last display pass.

        Returns:
            The new ``display_30min`` record, or None when there was nothing
            to combine.
        """
        with self._lock:
            session = self.store.get_session(self.session_id)
            if session is None:
                logger.warning(f"Display pass: session {self.session_id} not found")
                return None

            fired_at = format_timestamp(self.clock())
            since = self._watermark(session.last_display_at)
            records = self.store.get_analyses_for_session(
                self.session_id, AnalysisType.BACKGROUND.value, since=since
            )
            if not records:
                logger.info(f"Display pass: no background analyses for {self.session_id}")
                return None

            combined = self.combiner.combine(records)
            record = self.store.save_analysis(
                session_id=self.session_id,
                analysis_type=AnalysisType.DISPLAY.value,
                result=combined.to_json(),
                created_at=format_timestamp(self.clock()),
                confidence=DISPLAY_CONFIDENCE,
            )
            self.store.update_watermark(self.session_id, "last_display_at", fired_at)
            logger.info(
                f"Combined {len(records)} background analyses into display record "
                f"{record.id} for {self.session_id}"
            )
            return record

    def process_remaining(self) -> Optional[AnalysisRecord]:
        """Analyze and delete every frame still stored for the session."""
        with self._lock:
            frames = self.store.get_frames_for_session(self.session_id)
            if not frames:
                logger.info(f"No remaining frames to process for {self.session_id}")
                self.store.remove_session_dir(self.session_id)
                return None

            logger.info(f"Processing {len(frames)} remaining frames for {self.session_id}")
            record = self.analyzer.process_batch(self.session_id, frames, AnalysisType.FINAL)
            self.store.remove_session_dir(self.session_id)
            return record

    def stop(self) -> Optional[AnalysisRecord]:
        """Cancel the timers, then run the final pass."""
        self.stop_timers()
        return self.process_remaining()
