"""Fixed-cadence screen capture for one recording session.

Each tick grabs the screen, writes the image file and a JSON metadata
sidecar into the session's recording directory, then inserts the frame row.
Frame numbers are contiguous from 0: a tick that fails at any step is
logged and skipped without consuming a number.
"""

import json
import logging
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from .capture import ScreenCapture, ScreenCaptureError
from .models import Frame, format_timestamp
from .storage import FrameStore

logger = logging.getLogger(__name__)


class CaptureScheduler:
    """Drives periodic capture into the frame store.

    Attributes:
        session_id: Session frames are attached to
        session_dir: Directory receiving frame files
        interval: Seconds between ticks
    """

    def __init__(self, session_id: str, store: FrameStore, capture: ScreenCapture,
                 session_dir: Path, interval: float = 1.0,
                 clock: Callable[[], datetime] = datetime.now):
        self.session_id = session_id
        self.store = store
        self.capture = capture
        self.session_dir = Path(session_dir)
        self.interval = interval
        self.clock = clock
        self._frame_count = 0
        self._count_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def frame_count(self) -> int:
        with self._count_lock:
            return self._frame_count

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> Dict:
        """Begin capturing. Rejected, without side effects, if already running."""
        if self.is_running:
            logger.warning(f"Capture already running for {self.session_id}")
            return {"success": False, "message": "Capture already running"}

        self.session_dir.mkdir(parents=True, exist_ok=True)
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name=f"capture-{self.session_id}", daemon=True
        )
        self._thread.start()
        logger.info(f"Capture started for {self.session_id} every {self.interval}s")
        return {"success": True}

    def stop(self) -> int:
        """Halt the cadence and return the number of frames captured."""
        self._stop_event.set()
        if self._thread:
            self._thread.join()
            self._thread = None
        count = self.frame_count
        logger.info(f"Capture stopped for {self.session_id} - captured {count} frames")
        return count

    def _run_loop(self):
        next_tick = time.monotonic() + self.interval
        while not self._stop_event.wait(max(0.0, next_tick - time.monotonic())):
            self.capture_frame()
            next_tick += self.interval
            # Skip ticks missed while a capture overran the interval
            now = time.monotonic()
            if next_tick < now:
                next_tick = now + self.interval

    def capture_frame(self) -> Optional[Frame]:
        """Run one capture tick.

        Returns:
            The stored Frame, or None if the tick failed.
        """
        with self._count_lock:
            frame_number = self._frame_count

        stem = f"frame_{frame_number:06d}"
        try:
            image = self.capture.grab()
            timestamp = format_timestamp(self.clock())
            frame_path = self.session_dir / f"{stem}.{image.extension}"
            metadata_path = self.session_dir / f"{stem}.json"

            frame_path.write_bytes(image.data)
            metadata = {
                "timestamp": timestamp,
                "path": str(frame_path),
                "session_id": self.session_id,
                "frame_number": frame_number,
                "metadata": {
                    "width": image.width,
                    "height": image.height,
                    "file_size": image.size,
                    "format": image.format,
                },
            }
            metadata_path.write_text(json.dumps(metadata, indent=2))

            frame = self.store.create_frame(
                session_id=self.session_id,
                frame_number=frame_number,
                file_path=str(frame_path),
                metadata_path=str(metadata_path),
                timestamp=timestamp,
                file_size=image.size,
                width=image.width,
                height=image.height,
                format=image.format,
            )
        except ScreenCaptureError as e:
            logger.warning(f"Capture failed for frame {frame_number}: {e}")
            return None
        except (OSError, RuntimeError, sqlite3.Error) as e:
            logger.error(f"Failed to store frame {frame_number}: {e}")
            self._discard_files(stem)
            return None

        with self._count_lock:
            self._frame_count += 1
        logger.debug(f"Captured frame {frame_number} ({image.size} bytes)")
        return frame

    def _discard_files(self, stem: str):
        for path in self.session_dir.glob(f"{stem}.*"):
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove partial frame file {path}: {e}")
