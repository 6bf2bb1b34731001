"""Consolidation of tier-level analysis records into one narrative."""

import logging
from datetime import datetime
from typing import Callable, List

from .models import AnalysisRecord, format_timestamp
from .providers import ProviderRegistry
from .schemas import DEFAULT_TITLE, AnalysisResult, decode_payload

logger = logging.getLogger(__name__)

DISPLAY_CONFIDENCE = 0.9


class ResultCombiner:
    """Merges several analysis payloads into one.

    Segment offsets are kept relative to the window they came from; each
    copied segment records that window's start in ``window_start``.
    """

    def __init__(self, registry: ProviderRegistry, period_label: str = "30 minutes",
                 clock: Callable[[], datetime] = datetime.now):
        self.registry = registry
        self.period_label = period_label
        self.clock = clock

    def no_data(self, session_id: str = "") -> AnalysisResult:
        return AnalysisResult(
            session_id=session_id,
            summary="No analysis data available",
            description=["Unable to generate description"],
            title=DEFAULT_TITLE,
            segments=[],
            analyzed_at=format_timestamp(self.clock()),
        )

    def combine(self, records: List[AnalysisRecord]) -> AnalysisResult:
        """Combine records in creation order.

        Records whose payload does not decode are dropped. The title is
        asked from the provider exactly once, from the combined summary.
        """
        session_id = records[0].session_id if records else ""
        ordered = sorted(records, key=lambda r: (r.created_at, r.id))

        parsed = []
        for record in ordered:
            decoded = decode_payload(record.result)
            if not decoded.ok:
                logger.warning(f"Dropping analysis {record.id} from combination: {decoded.error}")
                continue
            parsed.append((record, decoded.value))

        if not parsed:
            return self.no_data(session_id)

        combined_summary = " ".join(payload.summary for _, payload in parsed)

        description: List[str] = []
        seen = set()
        for _, payload in parsed:
            for item in payload.description or [a.activity for a in payload.activities]:
                if item not in seen:
                    seen.add(item)
                    description.append(item)

        segments = []
        for record, payload in parsed:
            window_start = record.created_at
            if payload.activities and payload.activities[0].timestamp:
                window_start = payload.activities[0].timestamp
            for segment in payload.segments:
                if segment.window_start is None:
                    segment = segment.model_copy(update={"window_start": window_start})
                segments.append(segment)

        try:
            title = self.registry.current.title_for(combined_summary)
            title_text, reasoning = title.title, title.reasoning
        except Exception as e:
            logger.error(f"Title generation failed while combining analyses: {e}")
            title_text, reasoning = DEFAULT_TITLE, ""

        return AnalysisResult(
            session_id=session_id,
            summary=combined_summary,
            title=title_text,
            title_reasoning=reasoning,
            description=description,
            segments=segments,
            analyzed_at=format_timestamp(self.clock()),
            provider=self.registry.current_name,
            combined_from=len(parsed),
            period=self.period_label,
        )
