"""Session analysis orchestration.

Turns a set of frames into one structured ``AnalysisResult`` through the
current analysis provider. Sampling and batching bound the number of
provider calls per window:

1. keep every ``sample_every``-th frame
2. send the sample in batches of ``batch_size`` images to ``analyze_batch``
3. summarize the concatenated activities, then title the summary
4. segment the activities only when there are more than
   ``segment_threshold`` of them; otherwise one segment spans the window

Provider failures never escape: the caller always gets a structurally valid
result, degraded and carrying the error message when something failed.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .models import AnalysisRecord, AnalysisType, Frame, format_timestamp
from .providers import FrameImage, ProviderRegistry, prepare_image
from .schemas import (
    DEFAULT_TITLE,
    END_MARKER,
    Activity,
    AnalysisResult,
    TimelineSegment,
    Timing,
)
from .storage import FrameStore

logger = logging.getLogger(__name__)

ANALYSIS_CONFIDENCE = 0.85
FAILED_SUMMARY = "Analysis failed - manual review needed"
NO_FRAMES_MESSAGE = "No frames to analyze"


@dataclass
class AnalysisOutcome:
    """Result of analyzing a set of frames.

    ``success`` is False only when there was nothing to analyze; provider
    failures still produce ``success=True`` with a degraded ``result``.
    """
    success: bool
    result: Optional[AnalysisResult] = None
    message: str = ""


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


class SessionAnalyzer:
    """Runs provider analysis over frames and persists tier results.

    Attributes:
        store: FrameStore used to persist records and delete consumed frames
        registry: ProviderRegistry supplying the current provider
        config: AnalysisConfig with the sampling and batching policy
    """

    def __init__(self, store: FrameStore, registry: ProviderRegistry, config,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.registry = registry
        self.config = config
        self.clock = clock

    def sample_frames(self, frames: List[Frame]) -> List[Frame]:
        return frames[::self.config.sample_every]

    def _batches(self, frames: List[Frame]) -> List[List[Frame]]:
        size = self.config.batch_size
        return [frames[i:i + size] for i in range(0, len(frames), size)]

    def _load_images(self, frames: List[Frame]) -> List[FrameImage]:
        images = []
        for frame in frames:
            try:
                data = prepare_image(frame.file_path, self.config.max_image_size)
            except OSError as e:
                logger.warning(f"Skipping unreadable frame {frame.frame_number} ({frame.file_path}): {e}")
                continue
            images.append(FrameImage(frame=frame, data=data))
        return images

    def _analyze_activities(self, frames: List[Frame]) -> List[Activity]:
        provider = self.registry.current
        sampled = self.sample_frames(frames)
        logger.info(f"Sampling {len(sampled)} of {len(frames)} frames for analysis")

        activities: List[Activity] = []
        for batch in self._batches(sampled):
            images = self._load_images(batch)
            if not images:
                activities.append(Activity(
                    timestamp=batch[0].timestamp,
                    frame_number=batch[0].frame_number,
                    apps=["Error"],
                    activity="No valid frames found",
                    confidence=0.0,
                ))
                continue
            activities.extend(provider.analyze_batch(images))
        return activities

    def _degraded(self, session_id: str, error: str, timing: Timing) -> AnalysisResult:
        return AnalysisResult(
            session_id=session_id,
            summary=FAILED_SUMMARY,
            title=DEFAULT_TITLE,
            segments=[TimelineSegment(start="00:00", end=END_MARKER, description=FAILED_SUMMARY)],
            activities=[],
            analyzed_at=format_timestamp(self.clock()),
            provider=self.registry.current_name,
            error=error,
            timing=timing,
        )

    def analyze_frames(self, session_id: str, frames: List[Frame]) -> AnalysisOutcome:
        """Analyze frames into one result.

        Args:
            session_id: Session the frames belong to
            frames: Frames in chronological order, possibly empty

        Returns:
            AnalysisOutcome; ``success`` is False only for an empty input.
        """
        if not frames:
            return AnalysisOutcome(success=False, message=NO_FRAMES_MESSAGE)

        provider = self.registry.current
        start = time.time()
        timing = Timing(frame_count=len(frames))

        try:
            activities = self._analyze_activities(frames)
            timing.processed_frames = len(self.sample_frames(frames))

            step = time.time()
            summary = provider.summarize(activities)
            timing.summary_ms = _elapsed_ms(step)

            step = time.time()
            title = provider.title_for(summary)
            timing.title_ms = _elapsed_ms(step)

            if len(activities) > self.config.segment_threshold:
                step = time.time()
                segments = provider.segment(activities).segments
                timing.segment_ms = _elapsed_ms(step)
            else:
                segments = [TimelineSegment(start="00:00", end=END_MARKER, description=summary)]
        except Exception as e:
            timing.total_ms = _elapsed_ms(start)
            logger.error(f"Analysis failed for session {session_id}: {e}", exc_info=True)
            return AnalysisOutcome(success=True, result=self._degraded(session_id, str(e), timing))

        timing.total_ms = _elapsed_ms(start)
        result = AnalysisResult(
            session_id=session_id,
            summary=summary,
            title=title.title,
            title_reasoning=title.reasoning,
            segments=segments,
            activities=activities,
            analyzed_at=format_timestamp(self.clock()),
            provider=provider.name,
            timing=timing,
        )
        logger.info(
            f"Analyzed {timing.processed_frames} of {timing.frame_count} frames for session "
            f"{session_id} in {timing.total_ms}ms"
        )
        return AnalysisOutcome(success=True, result=result)

    def process_batch(self, session_id: str, frames: List[Frame],
                      analysis_type: AnalysisType) -> Optional[AnalysisRecord]:
        """Analyze frames, persist the record, then delete the frames.

        Returns:
            The new record, or None when there were no frames.
        """
        outcome = self.analyze_frames(session_id, frames)
        if not outcome.success:
            logger.info(f"{analysis_type.value}: {outcome.message.lower()} for session {session_id}")
            return None

        record = self.store.save_analysis(
            session_id=session_id,
            analysis_type=analysis_type.value,
            result=outcome.result.to_json(),
            created_at=format_timestamp(self.clock()),
            confidence=ANALYSIS_CONFIDENCE,
        )
        self.store.delete_frames(frames)
        logger.info(f"Stored {analysis_type.value} analysis {record.id} for session {session_id}")
        return record

    def analyze_session(self, session_id: str) -> Dict:
        """Analyze every stored frame of a session on demand.

        Rejected when the session already has any analysis record, so a
        session is never analyzed twice through this path.
        """
        if self.store.has_analysis(session_id):
            logger.info(f"Session {session_id} already has analysis, skipping")
            return {
                "success": False,
                "message": "Session already analyzed",
                "already_analyzed": True,
            }

        frames = self.store.get_frames_for_session(session_id)
        if not frames:
            logger.info(f"No frames found for session {session_id}")
            return {"success": False, "message": NO_FRAMES_MESSAGE}

        logger.info(f"Analyzing {len(frames)} frames for session {session_id}")
        try:
            record = self.process_batch(session_id, frames, AnalysisType.SESSION_SUMMARY)
        except (sqlite3.Error, RuntimeError) as e:
            logger.error(f"Failed to store analysis for session {session_id}: {e}")
            return {"success": False, "message": "Failed to store analysis"}
        self.store.remove_session_dir(session_id)

        payload = AnalysisResult.model_validate_json(record.result)
        return {"success": True, "session_id": session_id, "analysis": payload.model_dump(exclude_none=True)}
