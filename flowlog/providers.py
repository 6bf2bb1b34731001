"""
Analysis providers: vision and text models behind one capability interface.

Every provider offers the same four operations:

- ``analyze_batch(images)``: activity descriptors for a batch of frames
- ``summarize(activities)``: prose summary of an activity list
- ``title_for(summary)``: short title plus the model's reasoning
- ``segment(activities)``: timeline segments plus reasoning

Providers talk to their model over HTTP with ``requests`` and a bounded
timeout. Any transport error, timeout, HTTP error or response that fails
schema validation is raised as ``ProviderError``; callers decide how to
degrade.
"""

import base64
import io
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests
from PIL import Image

from .models import Frame
from .schemas import (
    Activity,
    BatchAnalysis,
    Segmentation,
    TitleResult,
    decode_json,
)

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_HOST = "http://localhost:11434"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


class ProviderError(Exception):
    """Raised when a provider call fails or returns an unusable response."""
    pass


@dataclass
class FrameImage:
    """A frame prepared for upload: base64 JPEG data plus its source frame."""
    frame: Frame
    data: str
    mime_type: str = "image/jpeg"


def prepare_image(path: str, max_size: int = 1024) -> str:
    """
    Prepare an image for a provider by resizing and converting to base64.

    Resizes the image so its longest side is at most ``max_size`` pixels
    (preserving aspect ratio) and encodes it as base64 JPEG.

    Args:
        path: Path to the image file.
        max_size: Longest side in pixels.

    Returns:
        Base64-encoded JPEG string.

    Raises:
        OSError: If the image cannot be read or decoded.
    """
    with Image.open(path) as img:
        if img.width > max_size or img.height > max_size:
            if img.width > img.height:
                ratio = max_size / img.width
            else:
                ratio = max_size / img.height
            new_width = int(img.width * ratio)
            new_height = int(img.height * ratio)
            img = img.resize((new_width, new_height), Image.Resampling.LANCZOS)

        if img.mode != "RGB":
            img = img.convert("RGB")

        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=85)
        return base64.b64encode(buffer.getvalue()).decode("utf-8")


def _format_activities(activities: List[Activity], numbered: bool = False) -> str:
    lines = []
    for i, a in enumerate(activities, start=1):
        prefix = f"{i}. " if numbered else ""
        lines.append(f"{prefix}{a.timestamp or 'unknown time'}: {a.activity}")
    return "\n".join(lines)


class AnalysisProvider:
    """
    Base class implementing the capability on top of ``_generate``.

    Subclasses implement ``_generate(prompt, images)`` returning the model's
    raw text and may override ``set_credential`` and ``is_configured``.

    Attributes:
        name: Registry key of the provider.
        model: Model identifier sent with each request.
        timeout: Timeout in seconds for each HTTP request.
    """

    name = "base"

    def __init__(self, model: str, timeout: int = 120):
        self.model = model
        self.timeout = timeout

    def is_configured(self) -> bool:
        return True

    def set_credential(self, value: Optional[str]) -> None:
        logger.debug(f"Provider {self.name} does not use credentials")

    def _generate(self, prompt: str, images: Optional[List[FrameImage]] = None) -> str:
        raise NotImplementedError

    def _post(self, url: str, payload: dict, **kwargs) -> dict:
        """POST JSON and return the decoded response body.

        Raises:
            ProviderError: On timeout, connection failure, HTTP error status
                or a non-JSON body.
        """
        start_time = time.time()
        try:
            response = requests.post(url, json=payload, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.Timeout as e:
            elapsed = time.time() - start_time
            logger.error(f"{self.name} request timed out after {elapsed:.2f}s")
            raise ProviderError(f"{self.name} timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Cannot connect to {self.name} at {url}: {e}")
            raise ProviderError(f"Cannot connect to {self.name}: {e}") from e
        except requests.exceptions.HTTPError as e:
            logger.error(f"{self.name} API error: {e}")
            raise ProviderError(f"{self.name} API error: {e}") from e
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"{self.name} request failed: {e}")
            raise ProviderError(f"{self.name} request failed: {e}") from e

        logger.info(f"{self.name} inference completed in {time.time() - start_time:.2f}s")
        return body

    def analyze_batch(self, images: List[FrameImage]) -> List[Activity]:
        """Describe what the user is doing across a batch of frames.

        Activities are mapped back onto the source frames by position so
        their timestamps and frame numbers come from the store rather than
        the model.
        """
        if not images:
            raise ProviderError("analyze_batch called with no images")

        prompt = (
            f"Analyze these {len(images)} screenshots from a user's computer session, "
            "in chronological order, and identify the visible applications, what the "
            "user is doing, and any websites, content or tasks visible.\n\n"
            "Return ONLY valid JSON:\n"
            '{"activities": [{"timestamp": "ISO timestamp", "frameNumber": 0, '
            '"apps": ["visible", "applications"], '
            '"activity": "specific description of what the user is doing", '
            '"confidence": 0.85}]}\n'
            "Return one entry per screenshot."
        )
        decoded = decode_json(self._generate(prompt, images), BatchAnalysis)
        if not decoded.ok:
            raise ProviderError(f"Unusable batch analysis response: {decoded.error}")

        activities = []
        for index, activity in enumerate(decoded.value.activities):
            if index < len(images):
                frame = images[index].frame
                activity = activity.model_copy(update={
                    "timestamp": frame.timestamp,
                    "frame_number": frame.frame_number,
                })
            activities.append(activity)
        return activities

    def summarize(self, activities: List[Activity]) -> str:
        prompt = (
            "You are summarizing someone's computer activity from one recording window.\n\n"
            f"Activity periods:\n{_format_activities(activities)}\n\n"
            "Write 3-4 sentences in the style of a personal journal without using \"I\", "
            "starting sentences with action verbs. Name the specific applications, "
            "websites and content involved. Describe only what is listed."
        )
        summary = self._generate(prompt).strip()
        if not summary:
            raise ProviderError("Empty summary response")
        return summary

    def title_for(self, summary: str) -> TitleResult:
        prompt = (
            f'Based on this summary: "{summary}"\n\n'
            "Return ONLY valid JSON:\n"
            '{"reasoning": "how you chose the title", '
            '"title": "5-8 word conversational title using only summary facts"}'
        )
        decoded = decode_json(self._generate(prompt), TitleResult)
        if not decoded.ok:
            raise ProviderError(f"Unusable title response: {decoded.error}")
        return decoded.value

    def segment(self, activities: List[Activity]) -> Segmentation:
        prompt = (
            "Group these activities into timeline segments. Decide where the natural "
            "breaks occur and make sure the segments cover the whole window.\n\n"
            f"Activities:\n{_format_activities(activities, numbered=True)}\n\n"
            "Return ONLY valid JSON:\n"
            '{"reasoning": "how you constructed the segments", '
            '"segments": [{"startTimestamp": "MM:SS", "endTimestamp": "MM:SS", '
            '"description": "what happened"}]}'
        )
        decoded = decode_json(self._generate(prompt), Segmentation)
        if not decoded.ok:
            raise ProviderError(f"Unusable segmentation response: {decoded.error}")
        return decoded.value


class OllamaProvider(AnalysisProvider):
    """Local vision model served by Ollama's HTTP chat API."""

    name = "ollama"

    def __init__(self, model: str = "gemma3:12b-it-qat", host: Optional[str] = None,
                 timeout: int = 120):
        super().__init__(model, timeout)
        self.host = (host or DEFAULT_OLLAMA_HOST).rstrip("/")

    def _generate(self, prompt: str, images: Optional[List[FrameImage]] = None) -> str:
        message = {"role": "user", "content": prompt}
        if images:
            message["images"] = [img.data for img in images]

        payload = {
            "model": self.model,
            "messages": [message],
            "stream": False,
            "keep_alive": "1h",
        }
        body = self._post(f"{self.host}/api/chat", payload)
        try:
            return body["message"]["content"]
        except (KeyError, TypeError) as e:
            raise ProviderError(f"Unexpected Ollama response shape: {e}") from e


class GeminiProvider(AnalysisProvider):
    """Google Gemini via the generateContent REST endpoint."""

    name = "gemini"

    def __init__(self, model: str = "gemini-2.5-flash", api_key: Optional[str] = None,
                 timeout: int = 120):
        super().__init__(model, timeout)
        self.api_key = api_key or None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def set_credential(self, value: Optional[str]) -> None:
        self.api_key = value or None
        if self.api_key:
            logger.info("Gemini API key set")
        else:
            logger.info("Gemini API key cleared")

    def _generate(self, prompt: str, images: Optional[List[FrameImage]] = None) -> str:
        if not self.api_key:
            raise ProviderError("Gemini API key not set")

        parts: List[dict] = [{"text": prompt}]
        for img in images or []:
            parts.append({"inline_data": {"mime_type": img.mime_type, "data": img.data}})

        body = self._post(
            f"{GEMINI_API_BASE}/models/{self.model}:generateContent",
            {"contents": [{"role": "user", "parts": parts}]},
            headers={"x-goog-api-key": self.api_key},
        )
        try:
            candidate_parts = body["candidates"][0]["content"]["parts"]
            return "".join(p.get("text", "") for p in candidate_parts)
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected Gemini response shape: {e}") from e


class ProviderRegistry:
    """Holds the available providers and which one is current.

    Selection and credentials can change at any time (startup, settings
    save); each analysis call reads ``current`` when it starts.
    """

    def __init__(self, providers: Dict[str, AnalysisProvider], default: str):
        if default not in providers:
            raise ValueError(f"Unknown default provider: {default}")
        self.providers = providers
        self.current_name = default

    @classmethod
    def from_config(cls, cfg) -> "ProviderRegistry":
        """Build the registry from a ``ProviderConfig``."""
        providers = {
            GeminiProvider.name: GeminiProvider(
                model=cfg.gemini_model,
                api_key=cfg.api_key,
                timeout=cfg.timeout_seconds,
            ),
            OllamaProvider.name: OllamaProvider(
                model=cfg.ollama_model,
                host=cfg.ollama_host,
                timeout=cfg.timeout_seconds,
            ),
        }
        default = cfg.name if cfg.name in providers else GeminiProvider.name
        return cls(providers, default)

    @property
    def current(self) -> AnalysisProvider:
        return self.providers[self.current_name]

    def set_provider(self, name: str) -> bool:
        if name not in self.providers:
            logger.error(f"Unknown AI provider: {name}")
            return False
        self.current_name = name
        logger.info(f"AI provider switched to: {name}")
        return True

    def set_credential(self, value: Optional[str]) -> None:
        """Apply a credential to the current provider."""
        self.current.set_credential(value)
