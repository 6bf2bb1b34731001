"""Configuration management for flowlog.

This module provides a hierarchical configuration system using YAML files and
Python dataclasses. It supports loading, saving, and updating configuration
values at runtime with validation and defaults.

Configuration Sections:
- capture: Screen capture cadence and image encoding
- processing: Tier periods for background and display analysis
- analysis: Sampling and batching policy for provider calls
- provider: Analysis provider selection, models, credentials and timeout
- storage: Data directory and retention
- web: HTTP API binding
- logging: Log level and file output

Example:
    >>> from flowlog.config import ConfigManager
    >>> config_mgr = ConfigManager()
    >>> print(config_mgr.config.processing.background_minutes)
    5
    >>> config_mgr.update('capture', 'interval_seconds', 2.0)
"""

import dataclasses
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Optional
import yaml

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Screen capture configuration.

    Attributes:
        interval_seconds: Time between captures (default: 1.0)
        format: Image format - png, webp, jpeg (default: png)
        quality: Compression quality 1-100 for lossy formats (default: 80)
        monitor: mss monitor index, 0 = all monitors combined (default: 1)
    """
    interval_seconds: float = 1.0
    format: str = "png"
    quality: int = 80
    monitor: int = 1


@dataclass
class ProcessingConfig:
    """Tiered processing configuration.

    Attributes:
        enabled: Run the tier timers while recording (default: True)
        background_minutes: Period of the background analysis tier (default: 5)
        display_minutes: Period of the display consolidation tier, a multiple
            of background_minutes (default: 30)
    """
    enabled: bool = True
    background_minutes: int = 5
    display_minutes: int = 30

    @property
    def period_label(self) -> str:
        return f"{self.display_minutes} minutes"


@dataclass
class AnalysisConfig:
    """Sampling and batching policy for provider calls.

    Attributes:
        sample_every: Keep every Nth frame of a window (default: 5)
        batch_size: Frames sent per batch analysis call (default: 3)
        segment_threshold: Minimum activity count before asking the provider
            for a timeline segmentation (default: 5)
        max_image_size: Longest side in pixels of images sent to the provider
    """
    sample_every: int = 5
    batch_size: int = 3
    segment_threshold: int = 5
    max_image_size: int = 1024


@dataclass
class ProviderConfig:
    """Analysis provider configuration.

    Attributes:
        name: Active provider - gemini or ollama (default: gemini)
        api_key: Credential for providers that need one (default: empty)
        gemini_model: Gemini model name
        ollama_model: Ollama vision model name
        ollama_host: Ollama API host URL (default: http://localhost:11434)
        timeout_seconds: Per-request timeout for provider calls (default: 120)
    """
    name: str = "gemini"
    api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    ollama_model: str = "gemma3:12b-it-qat"
    ollama_host: str = "http://localhost:11434"
    timeout_seconds: int = 120


@dataclass
class StorageConfig:
    """Data storage and retention configuration.

    Attributes:
        data_dir: Directory for the database and recordings (default: ~/flowlog-data)
        retention_days: Age after which maintenance removes sessions (default: 7)
    """
    data_dir: str = "~/flowlog-data"
    retention_days: int = 7

    @property
    def root(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def db_path(self) -> Path:
        return self.root / "flowlog.db"

    @property
    def recordings_dir(self) -> Path:
        return self.root / "recordings"


@dataclass
class WebConfig:
    """HTTP API configuration.

    Attributes:
        host: Host address to bind to (default: 127.0.0.1)
        port: Port number (default: 55556)
    """
    host: str = "127.0.0.1"
    port: int = 55556


@dataclass
class LoggingConfig:
    """Logging configuration.

    Attributes:
        level: Root log level name (default: INFO)
        log_to_file: Also write a rotating log file in the data directory
    """
    level: str = "INFO"
    log_to_file: bool = True


@dataclass
class Config:
    """Top-level configuration container."""
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    web: WebConfig = field(default_factory=WebConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = {
    'capture': CaptureConfig,
    'processing': ProcessingConfig,
    'analysis': AnalysisConfig,
    'provider': ProviderConfig,
    'storage': StorageConfig,
    'web': WebConfig,
    'logging': LoggingConfig,
}


def validate_config(config: Config) -> List[str]:
    """Check cross-field constraints.

    Args:
        config: Config to check

    Returns:
        List of human-readable problems, empty when the config is usable.
    """
    errors = []
    processing = config.processing
    if processing.background_minutes <= 0:
        errors.append("processing.background_minutes must be positive")
    elif (processing.display_minutes <= 0
          or processing.display_minutes % processing.background_minutes != 0):
        errors.append(
            "processing.display_minutes must be a positive multiple of "
            "processing.background_minutes"
        )
    if config.capture.interval_seconds <= 0:
        errors.append("capture.interval_seconds must be positive")
    if config.analysis.sample_every < 1:
        errors.append("analysis.sample_every must be at least 1")
    if config.analysis.batch_size < 1:
        errors.append("analysis.batch_size must be at least 1")
    if config.provider.timeout_seconds <= 0:
        errors.append("provider.timeout_seconds must be positive")
    return errors


class ConfigManager:
    """Manages configuration loading, saving, and updates.

    Handles YAML configuration file I/O with automatic fallback to defaults
    and merging of user settings with defaults.

    Attributes:
        DEFAULT_PATH: Default configuration file location
        path: Actual configuration file path being used
        config: Current configuration object

    Example:
        >>> config_mgr = ConfigManager()
        >>> config_mgr.update('provider', 'name', 'ollama')
        True
    """

    DEFAULT_PATH = Path("~/.config/flowlog/config.yaml").expanduser()

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path).expanduser() if path else self.DEFAULT_PATH
        self.config = self._load()

    def _load(self) -> Config:
        """Load configuration from YAML file.

        Returns:
            Config object with loaded or default values

        Note:
            Missing fields use defaults from dataclass definitions.
            Invalid YAML or an invalid combination of values returns defaults.
        """
        if not self.path.exists():
            logger.info(f"No config file at {self.path}, using defaults")
            return Config()

        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(f"Failed to load config from {self.path}: {e}")
            logger.info("Using default configuration")
            return Config()

        if not isinstance(data, dict):
            logger.warning(f"Config file {self.path} is not a mapping, using defaults")
            return Config()

        config = self._dict_to_config(data)
        errors = validate_config(config)
        if errors:
            for error in errors:
                logger.warning(f"Invalid configuration: {error}")
            logger.info("Using default configuration")
            return Config()

        logger.info(f"Loaded configuration from {self.path}")
        return config

    def _dict_to_config(self, data: dict) -> Config:
        """Construct Config from a dictionary, ignoring unknown keys."""
        def filter_known_fields(data_dict, dataclass_type) -> dict:
            if not isinstance(data_dict, dict):
                return {}
            known_fields = {f.name for f in dataclasses.fields(dataclass_type)}
            unknown = set(data_dict.keys()) - known_fields
            if unknown:
                logger.debug(f"Ignoring unknown config fields: {unknown}")
            return {k: v for k, v in data_dict.items() if k in known_fields}

        sections = {
            name: section_type(**filter_known_fields(data.get(name, {}), section_type))
            for name, section_type in _SECTIONS.items()
        }
        return Config(**sections)

    def save(self) -> None:
        """Save current configuration to YAML file.

        Raises:
            OSError: If file write fails
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                yaml.dump(
                    asdict(self.config),
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    indent=2
                )
            logger.info(f"Saved configuration to {self.path}")
        except OSError as e:
            logger.error(f"Failed to save config to {self.path}: {e}")
            raise

    def update(self, section: str, key: str, value) -> bool:
        """Update a single configuration value and save.

        Args:
            section: Config section name (e.g., 'capture', 'provider')
            key: Setting name within section (e.g., 'interval_seconds')
            value: New value to set

        Returns:
            True if value was changed and saved, False if unchanged or invalid
        """
        section_obj = getattr(self.config, section, None)
        if section not in _SECTIONS or section_obj is None:
            logger.warning(f"Invalid config section: {section}")
            return False

        if key not in {f.name for f in dataclasses.fields(section_obj)}:
            logger.warning(f"Invalid config key: {section}.{key}")
            return False

        old_value = getattr(section_obj, key)
        if old_value == value:
            logger.debug(f"No change for {section}.{key} (already {value})")
            return False

        setattr(section_obj, key, value)
        errors = validate_config(self.config)
        if errors:
            setattr(section_obj, key, old_value)
            logger.warning(f"Rejected {section}.{key}={value!r}: {'; '.join(errors)}")
            return False

        self.save()
        logger.info(f"Updated {section}.{key}: {old_value} -> {value}")
        return True

    def to_dict(self) -> dict:
        return asdict(self.config)
