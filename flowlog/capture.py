"""Screen Capture Module.

This module provides the capture capability used by the capture scheduler:
grab the screen once and return encoded image bytes with their dimensions.
It uses the MSS library for fast cross-platform screen capture and Pillow
for encoding.

Key Classes:
    ScreenCapture: Grabs and encodes screenshots
    CapturedImage: Encoded image bytes plus metadata
    ScreenCaptureError: Raised when a capture fails for any reason

Example:
    >>> from flowlog.capture import ScreenCapture
    >>> capture = ScreenCapture()
    >>> image = capture.grab()
    >>> print(image.width, image.height, len(image.data))
"""

import io
import logging
from dataclasses import dataclass
from typing import Optional

import mss
from PIL import Image

logger = logging.getLogger(__name__)

_PIL_FORMATS = {
    "png": "PNG",
    "webp": "WEBP",
    "jpeg": "JPEG",
    "jpg": "JPEG",
}


class ScreenCaptureError(Exception):
    """Raised when screenshot capture fails.

    Covers display server connection issues, monitor access problems and
    image encoding errors. Callers treat it as a skipped tick.
    """
    pass


@dataclass
class CapturedImage:
    """An encoded screenshot.

    Attributes:
        data: Encoded image bytes
        width: Width in pixels
        height: Height in pixels
        format: Encoding format name (png, webp, jpeg)
    """
    data: bytes
    width: int
    height: int
    format: str

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return "jpg" if self.format == "jpeg" else self.format


class ScreenCapture:
    """Captures the screen and encodes it in memory.

    Attributes:
        format: Output encoding (png, webp or jpeg)
        quality: Quality for lossy formats, 1-100
        monitor: mss monitor index; 1 is the primary monitor, 0 is all
            monitors combined

    Example:
        >>> capture = ScreenCapture(format="webp", quality=80)
        >>> image = capture.grab()
    """

    def __init__(self, format: str = "png", quality: int = 80, monitor: int = 1):
        """Initialize the screen capture instance.

        Args:
            format: Output encoding. Defaults to png.
            quality: Compression quality for lossy formats. Defaults to 80.
            monitor: mss monitor index. Defaults to the primary monitor.

        Raises:
            ValueError: If the format is not supported.
        """
        fmt = format.lower()
        if fmt not in _PIL_FORMATS:
            raise ValueError(f"Unsupported capture format: {format}")
        self.format = "jpeg" if fmt == "jpg" else fmt
        self.quality = quality
        self.monitor = monitor

    def grab(self, region: Optional[dict] = None) -> CapturedImage:
        """Capture one screenshot.

        Args:
            region: Optional region with keys left, top, width, height. If
                None, captures the configured monitor.

        Returns:
            CapturedImage with encoded bytes and pixel dimensions.

        Raises:
            ScreenCaptureError: If capture fails due to:
                - Display server not available
                - Monitor access issues
                - Image encoding errors
        """
        try:
            with mss.mss() as sct:
                if region:
                    monitor = {
                        'left': region['left'],
                        'top': region['top'],
                        'width': region['width'],
                        'height': region['height']
                    }
                else:
                    if len(sct.monitors) <= self.monitor:
                        raise ScreenCaptureError(f"Monitor {self.monitor} not detected")
                    monitor = sct.monitors[self.monitor]

                screenshot = sct.grab(monitor)
                img = Image.frombytes("RGB", screenshot.size, screenshot.rgb)

            return self.encode(img)

        except ScreenCaptureError:
            raise
        except OSError as e:
            if "cannot connect to display" in str(e).lower():
                raise ScreenCaptureError("Cannot connect to display server") from e
            raise ScreenCaptureError(f"Display server error: {e}") from e
        except Exception as e:
            raise ScreenCaptureError(f"Failed to capture screenshot: {e}") from e

    def encode(self, img: Image.Image) -> CapturedImage:
        """Encode a PIL image in the configured format."""
        buffer = io.BytesIO()
        save_kwargs = {}
        if self.format in ("webp", "jpeg"):
            save_kwargs["quality"] = self.quality
        if self.format == "jpeg" and img.mode != "RGB":
            img = img.convert("RGB")
        try:
            img.save(buffer, _PIL_FORMATS[self.format], **save_kwargs)
        except (OSError, ValueError) as e:
            raise ScreenCaptureError(f"Failed to encode screenshot as {self.format}: {e}") from e

        return CapturedImage(
            data=buffer.getvalue(),
            width=img.width,
            height=img.height,
            format=self.format,
        )
