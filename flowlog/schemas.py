"""Typed payloads exchanged with analysis providers and stored in analysis records.

Provider responses and stored payloads go through ``decode_json``, which
returns a ``DecodeResult`` holding either a validated model or a parse error.
Nothing outside this module parses raw JSON text.
"""

import json
import re
from dataclasses import dataclass
from typing import Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

END_MARKER = "End"
DEFAULT_TITLE = "Recording Session"

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Activity(_Schema):
    """What the user was doing in one sampled frame."""
    timestamp: Optional[str] = None
    frame_number: Optional[int] = Field(default=None, alias="frameNumber")
    apps: List[str] = Field(default_factory=lambda: ["Unknown"])
    activity: str = "Analysis completed"
    confidence: float = 0.85


class BatchAnalysis(_Schema):
    activities: List[Activity] = Field(min_length=1)


class TitleResult(_Schema):
    title: str = Field(min_length=1)
    reasoning: str = ""


class TimelineSegment(_Schema):
    """A contiguous stretch of a window.

    ``start`` and ``end`` are mm:ss offsets relative to the analyzed window;
    ``end`` may be the sentinel ``"End"``. Segments copied into a combined
    payload keep their offsets and carry the start time of their source
    window in ``window_start``.
    """
    start: str = Field(alias="startTimestamp")
    end: str = Field(alias="endTimestamp")
    description: str
    window_start: Optional[str] = None


class Segmentation(_Schema):
    segments: List[TimelineSegment] = Field(min_length=1)
    reasoning: str = ""


class Timing(_Schema):
    total_ms: int = 0
    summary_ms: int = 0
    title_ms: int = 0
    segment_ms: int = 0
    frame_count: int = 0
    processed_frames: int = 0


class AnalysisResult(_Schema):
    """Payload of an analysis record."""
    session_id: str = ""
    summary: str
    title: str
    title_reasoning: str = ""
    segments: List[TimelineSegment] = Field(default_factory=list)
    activities: List[Activity] = Field(default_factory=list)
    description: List[str] = Field(default_factory=list)
    analyzed_at: Optional[str] = None
    provider: Optional[str] = None
    error: Optional[str] = None
    timing: Optional[Timing] = None
    combined_from: Optional[int] = None
    period: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def _flatten_title(cls, value):
        # Older payloads stored the provider's {title, reasoning} object.
        if isinstance(value, dict):
            return value.get("title") or DEFAULT_TITLE
        return value

    @field_validator("segments", mode="before")
    @classmethod
    def _unwrap_segments(cls, value):
        if isinstance(value, dict):
            return value.get("segments") or []
        return value

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


T = TypeVar("T", bound=BaseModel)


@dataclass
class DecodeResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    cleaned = text.strip()
    match = _FENCE_RE.match(cleaned)
    return match.group(1) if match else cleaned


def decode_json(text: Optional[str], model: Type[T]) -> DecodeResult[T]:
    """Decode JSON text into ``model``.

    Args:
        text: Raw text, optionally wrapped in a markdown code fence
        model: Pydantic model to validate against

    Returns:
        DecodeResult with ``value`` set on success, ``error`` otherwise.
    """
    if not text or not text.strip():
        return DecodeResult(error="empty response")
    try:
        data = json.loads(strip_code_fence(text))
    except ValueError as e:
        return DecodeResult(error=f"invalid JSON: {e}")
    try:
        return DecodeResult(value=model.model_validate(data))
    except ValidationError as e:
        return DecodeResult(error=f"schema mismatch: {e.error_count()} error(s): {e.errors()[0]['msg']}")


def decode_payload(text: Optional[str]) -> DecodeResult[AnalysisResult]:
    return decode_json(text, AnalysisResult)
