"""Domain records persisted by the frame store.

Timestamps are stored as naive local ISO-8601 strings with a fixed
microsecond precision so that string comparison in SQL matches
chronological order.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Optional


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class AnalysisType(str, Enum):
    BACKGROUND = "background_5min"
    DISPLAY = "display_30min"
    SESSION_SUMMARY = "session_summary"
    FINAL = "final_analysis"


def format_timestamp(dt: datetime) -> str:
    """Serialize a datetime in the store's sortable format."""
    return dt.isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def session_id_for(dt: datetime) -> str:
    """Derive a session identifier from its start time."""
    return dt.strftime("%Y-%m-%d_%H-%M-%S")


@dataclass
class Session:
    """One continuous recording interval.

    ``frame_count`` is the number of frames captured and is fixed when the
    session completes; ``stored_frames`` is how many frame rows currently
    remain in the store, which drops as tiers clean up.
    """
    session_id: str
    start_time: str
    end_time: Optional[str] = None
    frame_count: int = 0
    status: str = SessionStatus.ACTIVE.value
    last_background_at: Optional[str] = None
    last_display_at: Optional[str] = None
    stored_frames: int = 0
    first_frame_time: Optional[str] = None
    last_frame_time: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Session":
        data = dict(row)
        return cls(
            session_id=data["session_id"],
            start_time=data["start_time"],
            end_time=data.get("end_time"),
            frame_count=data.get("frame_count") or 0,
            status=data.get("status") or SessionStatus.ACTIVE.value,
            last_background_at=data.get("last_background_at"),
            last_display_at=data.get("last_display_at"),
            stored_frames=data.get("stored_frames") or 0,
            first_frame_time=data.get("first_frame_time"),
            last_frame_time=data.get("last_frame_time"),
        )

    @property
    def is_completed(self) -> bool:
        return self.status == SessionStatus.COMPLETED.value

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Frame:
    """One captured screen image and its metadata."""
    id: int
    session_id: str
    frame_number: int
    file_path: str
    timestamp: str
    metadata_path: Optional[str] = None
    file_size: int = 0
    width: int = 0
    height: int = 0
    format: str = "png"

    @classmethod
    def from_row(cls, row) -> "Frame":
        data = dict(row)
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            frame_number=data["frame_number"],
            file_path=data["file_path"],
            timestamp=data["timestamp"],
            metadata_path=data.get("metadata_path"),
            file_size=data.get("file_size") or 0,
            width=data.get("width") or 0,
            height=data.get("height") or 0,
            format=data.get("format") or "png",
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AnalysisRecord:
    """One persisted, typed provider result. Append-only."""
    id: int
    session_id: str
    analysis_type: str
    result: str
    created_at: str
    confidence: Optional[float] = None
    frame_id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "AnalysisRecord":
        data = dict(row)
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            analysis_type=data["analysis_type"],
            result=data.get("result") or "",
            created_at=data["created_at"],
            confidence=data.get("confidence"),
            frame_id=data.get("frame_id"),
        )

    def to_dict(self) -> dict:
        return asdict(self)
