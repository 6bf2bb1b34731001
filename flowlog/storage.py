"""SQLite Frame Store.

This module provides the durable record of sessions, captured frames,
analysis records and key/value settings. It manages SQLite connections,
initializes the schema, and owns the on-disk frame files so that a frame's
row and its files are always removed together.

Database Schema:
    sessions: one row per recording session, including the tier watermarks
        last_background_at and last_display_at
    frames: captured frames (file reference, timestamp, size, dimensions),
        cascade-deleted with their session
    analysis: append-only analysis records; frame_id is nulled, not
        deleted, when its frame goes away
    settings: provider selection and credentials

Concurrency:
    Writes are serialized with a lock and each insert commits in its own
    transaction. Frame files are written before their row is inserted, so a
    reader that sees a frame row always sees a complete frame.

Example:
    >>> store = FrameStore("/tmp/flowlog.db", "/tmp/recordings")
    >>> session = store.create_session("2025-01-01_09-00-00", "2025-01-01T09:00:00.000000")
    >>> frames = store.get_frames_since(session.session_id, session.start_time)
"""

import logging
import shutil
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .models import AnalysisRecord, Frame, Session, SessionStatus

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = """
    s.session_id, s.start_time, s.end_time, s.frame_count, s.status,
    s.last_background_at, s.last_display_at,
    COUNT(f.id) AS stored_frames,
    MIN(f.timestamp) AS first_frame_time,
    MAX(f.timestamp) AS last_frame_time
"""

_WATERMARK_COLUMNS = ("last_background_at", "last_display_at")


class FrameStore:
    """SQLite interface for sessions, frames and analysis records.

    Attributes:
        db_path (str): Absolute path to the SQLite database file
        recordings_dir (Path): Directory holding one sub-directory of frame
            files per session
    """

    def __init__(self, db_path, recordings_dir):
        """Initialize the store and ensure the schema exists.

        Args:
            db_path: Path to SQLite database file
            recordings_dir: Directory for per-session frame files

        Raises:
            RuntimeError: If directory creation fails due to permission issues
        """
        self.db_path = str(db_path)
        self.recordings_dir = Path(recordings_dir)
        self._write_lock = threading.RLock()
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.recordings_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise RuntimeError(f"Permission denied creating data directories: {e}") from e
        self.init_db()

    @contextmanager
    def get_connection(self):
        """Context manager for SQLite connections.

        Yields:
            sqlite3.Connection with Row factory and foreign keys enabled

        Raises:
            RuntimeError: If the database cannot be opened
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            try:
                yield conn
            finally:
                conn.close()
        except (sqlite3.OperationalError, PermissionError) as e:
            raise RuntimeError(f"Database access error for {self.db_path}: {e}") from e

    def init_db(self):
        """Create tables and indexes if they don't exist."""
        with self.get_connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT UNIQUE NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    frame_count INTEGER DEFAULT 0,
                    status TEXT DEFAULT 'active',
                    last_background_at TEXT,
                    last_display_at TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS frames (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    frame_number INTEGER NOT NULL,
                    file_path TEXT NOT NULL,
                    metadata_path TEXT,
                    timestamp TEXT NOT NULL,
                    file_size INTEGER,
                    width INTEGER,
                    height INTEGER,
                    format TEXT DEFAULT 'png',
                    FOREIGN KEY (session_id) REFERENCES sessions (session_id) ON DELETE CASCADE
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS analysis (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    frame_id INTEGER,
                    analysis_type TEXT NOT NULL,
                    result TEXT,
                    confidence REAL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (session_id) REFERENCES sessions (session_id) ON DELETE CASCADE,
                    FOREIGN KEY (frame_id) REFERENCES frames (id) ON DELETE SET NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_start_time ON sessions(start_time)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_frames_session_ts ON frames(session_id, timestamp)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_analysis_session ON analysis(session_id, created_at)")
            conn.commit()

    # Sessions

    def session_dir(self, session_id: str) -> Path:
        return self.recordings_dir / session_id

    def create_session(self, session_id: str, start_time: str) -> Session:
        """Insert a new active session.

        Raises:
            sqlite3.IntegrityError: If the session id already exists
        """
        with self._write_lock, self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO sessions (session_id, start_time, status)
                VALUES (?, ?, ?)
                """,
                (session_id, start_time, SessionStatus.ACTIVE.value),
            )
            conn.commit()
        return Session(session_id=session_id, start_time=start_time)

    def session_exists(self, session_id: str) -> bool:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            return row is not None

    def get_session(self, session_id: str) -> Optional[Session]:
        with self.get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM sessions s
                LEFT JOIN frames f ON s.session_id = f.session_id
                WHERE s.session_id = ?
                GROUP BY s.id
                """,
                (session_id,),
            ).fetchone()
            return Session.from_row(row) if row else None

    def list_sessions(self, limit: int = 50, offset: int = 0) -> List[Session]:
        """Sessions newest first, with live counts of stored frames."""
        with self.get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM sessions s
                LEFT JOIN frames f ON s.session_id = f.session_id
                GROUP BY s.id
                ORDER BY s.start_time DESC
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            ).fetchall()
            return [Session.from_row(row) for row in rows]

    def finalize_session(self, session_id: str, end_time: str, frame_count: int) -> None:
        """Close a session: set end time, captured frame count and completed status."""
        with self._write_lock, self.get_connection() as conn:
            conn.execute(
                """
                UPDATE sessions
                SET end_time = ?, frame_count = ?, status = ?, updated_at = CURRENT_TIMESTAMP
                WHERE session_id = ?
                """,
                (end_time, frame_count, SessionStatus.COMPLETED.value, session_id),
            )
            conn.commit()

    def update_watermark(self, session_id: str, column: str, value: str) -> None:
        """Record the time up to which a tier has consumed its input."""
        if column not in _WATERMARK_COLUMNS:
            raise ValueError(f"Unknown watermark column: {column}")
        with self._write_lock, self.get_connection() as conn:
            conn.execute(
                f"UPDATE sessions SET {column} = ?, updated_at = CURRENT_TIMESTAMP WHERE session_id = ?",
                (value, session_id),
            )
            conn.commit()

    def get_unanalyzed_sessions(self) -> List[Session]:
        """Completed sessions with no analysis record, oldest first."""
        with self.get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM sessions s
                LEFT JOIN frames f ON s.session_id = f.session_id
                WHERE s.status = ?
                  AND NOT EXISTS (SELECT 1 FROM analysis a WHERE a.session_id = s.session_id)
                GROUP BY s.id
                ORDER BY s.start_time ASC
                """,
                (SessionStatus.COMPLETED.value,),
            ).fetchall()
            return [Session.from_row(row) for row in rows]

    def mark_interrupted_sessions(self, end_time: str) -> List[str]:
        """Complete sessions left active by a previous process.

        Their frame_count is set to the frames that were persisted, which is
        the best available count once the capturing process is gone.

        Returns:
            The ids of the sessions that were closed.
        """
        with self._write_lock, self.get_connection() as conn:
            rows = conn.execute(
                "SELECT session_id FROM sessions WHERE status = ?",
                (SessionStatus.ACTIVE.value,),
            ).fetchall()
            session_ids = [row["session_id"] for row in rows]
            for session_id in session_ids:
                conn.execute(
                    """
                    UPDATE sessions
                    SET end_time = ?, status = ?,
                        frame_count = MAX(frame_count,
                            (SELECT COUNT(*) FROM frames WHERE session_id = ?)),
                        updated_at = CURRENT_TIMESTAMP
                    WHERE session_id = ?
                    """,
                    (end_time, SessionStatus.COMPLETED.value, session_id, session_id),
                )
            conn.commit()
        return session_ids

    # Frames

    def create_frame(self, session_id: str, frame_number: int, file_path: str,
                     timestamp: str, metadata_path: Optional[str] = None,
                     file_size: int = 0, width: int = 0, height: int = 0,
                     format: str = "png") -> Frame:
        """Insert a frame row. The frame's files must already be on disk."""
        with self._write_lock, self.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO frames (
                    session_id, frame_number, file_path, metadata_path,
                    timestamp, file_size, width, height, format
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (session_id, frame_number, file_path, metadata_path,
                 timestamp, file_size, width, height, format),
            )
            conn.commit()
            frame_id = cursor.lastrowid

        return Frame(
            id=frame_id,
            session_id=session_id,
            frame_number=frame_number,
            file_path=file_path,
            timestamp=timestamp,
            metadata_path=metadata_path,
            file_size=file_size,
            width=width,
            height=height,
            format=format,
        )

    def get_frames_for_session(self, session_id: str) -> List[Frame]:
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM frames
                WHERE session_id = ?
                ORDER BY frame_number ASC
                """,
                (session_id,),
            ).fetchall()
            return [Frame.from_row(row) for row in rows]

    def get_frames_since(self, session_id: str, since: str,
                         until: Optional[str] = None) -> List[Frame]:
        """Frames with ``since <= timestamp`` (and ``timestamp < until`` if given)."""
        query = "SELECT * FROM frames WHERE session_id = ? AND timestamp >= ?"
        params: list = [session_id, since]
        if until is not None:
            query += " AND timestamp < ?"
            params.append(until)
        query += " ORDER BY frame_number ASC"

        with self.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [Frame.from_row(row) for row in rows]

    def count_frames(self, session_id: Optional[str] = None) -> int:
        with self.get_connection() as conn:
            if session_id is None:
                row = conn.execute("SELECT COUNT(*) AS count FROM frames").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS count FROM frames WHERE session_id = ?",
                    (session_id,),
                ).fetchone()
            return row["count"]

    def delete_frames(self, frames: Iterable[Frame]) -> Tuple[int, int]:
        """Delete frame rows and their files as one best-effort operation.

        A failure deleting rows does not prevent file deletion and a failure
        on one file does not stop the rest of the batch; every failure is
        logged.

        Returns:
            Tuple of (rows deleted, image files deleted).
        """
        frames = list(frames)
        if not frames:
            return 0, 0

        rows_deleted = 0
        frame_ids = [f.id for f in frames]
        try:
            with self._write_lock, self.get_connection() as conn:
                placeholders = ",".join("?" for _ in frame_ids)
                cursor = conn.execute(
                    f"DELETE FROM frames WHERE id IN ({placeholders})", frame_ids
                )
                conn.commit()
                rows_deleted = cursor.rowcount
        except (sqlite3.Error, RuntimeError) as e:
            logger.error(f"Failed to delete {len(frame_ids)} frame rows: {e}")

        files_deleted = 0
        for frame in frames:
            try:
                path = Path(frame.file_path)
                if path.exists():
                    path.unlink()
                    files_deleted += 1
            except OSError as e:
                logger.error(f"Failed to delete frame file {frame.file_path}: {e}")
            if frame.metadata_path:
                try:
                    Path(frame.metadata_path).unlink(missing_ok=True)
                except OSError as e:
                    logger.error(f"Failed to delete frame metadata {frame.metadata_path}: {e}")

        logger.info(f"Deleted {rows_deleted} frame rows and {files_deleted} frame files")
        return rows_deleted, files_deleted

    def remove_session_dir(self, session_id: str, force: bool = False) -> bool:
        """Remove a session's recording directory.

        Args:
            session_id: Session whose directory to remove
            force: Remove remaining contents too; otherwise only an empty
                directory is removed

        Returns:
            True if the directory no longer exists.
        """
        path = self.session_dir(session_id)
        if not path.exists():
            return True
        try:
            if force:
                shutil.rmtree(path)
            else:
                path.rmdir()
            logger.info(f"Removed session directory: {path}")
            return True
        except OSError as e:
            logger.warning(f"Could not remove session directory {path}: {e}")
            return False

    # Analysis

    def save_analysis(self, session_id: str, analysis_type: str, result: str,
                      created_at: str, confidence: Optional[float] = None,
                      frame_id: Optional[int] = None) -> AnalysisRecord:
        with self._write_lock, self.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO analysis (session_id, frame_id, analysis_type, result, confidence, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (session_id, frame_id, analysis_type, result, confidence, created_at),
            )
            conn.commit()
            record_id = cursor.lastrowid

        return AnalysisRecord(
            id=record_id,
            session_id=session_id,
            analysis_type=analysis_type,
            result=result,
            created_at=created_at,
            confidence=confidence,
            frame_id=frame_id,
        )

    def get_analyses_for_session(self, session_id: str,
                                 analysis_type: Optional[str] = None,
                                 since: Optional[str] = None) -> List[AnalysisRecord]:
        """Analysis records in creation order, optionally filtered by type and creation time."""
        query = "SELECT * FROM analysis WHERE session_id = ?"
        params: list = [session_id]
        if analysis_type is not None:
            query += " AND analysis_type = ?"
            params.append(analysis_type)
        if since is not None:
            query += " AND created_at >= ?"
            params.append(since)
        query += " ORDER BY created_at ASC, id ASC"

        with self.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [AnalysisRecord.from_row(row) for row in rows]

    def has_analysis(self, session_id: str) -> bool:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM analysis WHERE session_id = ? LIMIT 1", (session_id,)
            ).fetchone()
            return row is not None

    # Settings

    def set_setting(self, key: str, value: str) -> None:
        with self._write_lock, self.get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO settings (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                """,
                (key, value),
            )
            conn.commit()

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else default

    def get_all_settings(self) -> Dict[str, str]:
        with self.get_connection() as conn:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
            return {row["key"]: row["value"] for row in rows}

    # Maintenance

    def get_stats(self) -> Dict:
        with self.get_connection() as conn:
            sessions = conn.execute("SELECT COUNT(*) AS count FROM sessions").fetchone()["count"]
            frames = conn.execute("SELECT COUNT(*) AS count FROM frames").fetchone()["count"]
            analysis = conn.execute("SELECT COUNT(*) AS count FROM analysis").fetchone()["count"]
        return {
            "sessions": sessions,
            "frames": frames,
            "analysis": analysis,
            "db_path": self.db_path,
        }

    def delete_session(self, session_id: str) -> Dict:
        """Delete a session with its frames, files and analysis records."""
        frames = self.get_frames_for_session(session_id)
        _, files_deleted = self.delete_frames(frames)

        with self._write_lock, self.get_connection() as conn:
            analyses = conn.execute(
                "DELETE FROM analysis WHERE session_id = ?", (session_id,)
            ).rowcount
            sessions = conn.execute(
                "DELETE FROM sessions WHERE session_id = ?", (session_id,)
            ).rowcount
            conn.commit()

        self.remove_session_dir(session_id, force=True)
        logger.info(
            f"Deleted session {session_id}: {sessions} sessions, "
            f"{len(frames)} frames, {analyses} analyses"
        )
        return {
            "deleted_sessions": sessions,
            "deleted_frames": len(frames),
            "deleted_files": files_deleted,
            "deleted_analyses": analyses,
        }

    def get_session_ids_started_before(self, cutoff: str) -> List[str]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT session_id FROM sessions WHERE start_time < ? AND status = ?",
                (cutoff, SessionStatus.COMPLETED.value),
            ).fetchall()
            return [row["session_id"] for row in rows]

    def get_analyzed_session_ids(self) -> List[str]:
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT s.session_id
                FROM sessions s
                INNER JOIN analysis a ON s.session_id = a.session_id
                """
            ).fetchall()
            return [row["session_id"] for row in rows]
