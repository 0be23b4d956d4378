"""
Configuration Module
Loads application settings from a TOML file with environment overrides.
"""

import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Dict, Any, Optional

import toml

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "REAPER_CONTROL_CONFIG"
DEFAULT_CONFIG_PATH = "config.toml"

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"

# Events the MIDI controller and WebSocket clients can trigger
MIDI_EVENTS = (
    'togglePlay',
    'pause',
    'seekToPosition',
    'seekToRegion',
    'seekToCurrentRegionStart',
    'nextRegion',
    'previousRegion',
    'refreshRegions',
    'toggleAutoplay',
    'toggleCountIn',
)


class ConfigError(Exception):
    """Raised when config loading or validation fails."""
    pass


def _default_note_mapping() -> Dict[int, str]:
    return {
        44: 'seekToCurrentRegionStart',
        45: 'toggleAutoplay',
        46: 'toggleCountIn',
        48: 'previousRegion',
        49: 'pause',
        50: 'togglePlay',
        51: 'nextRegion',
    }


@dataclass
class ReaperConfig:
    """Connection settings for the REAPER web/OSC interface."""
    host: str = "localhost"
    port: int = 8080
    protocol: str = "http"
    connection_timeout: float = 3.0
    polling_interval: float = 0.5
    adapter: str = "web"  # 'web' or 'osc'
    osc_remote_port: int = 8000
    osc_local_port: int = 9000
    project_check_every: int = 10  # polls between project id checks


@dataclass
class MidiConfig:
    """MIDI controller settings."""
    enabled: bool = True
    device_name: Optional[str] = None  # every input if None, else a name substring
    channel: Optional[int] = None  # all channels if None
    note_mapping: Dict[int, str] = field(default_factory=_default_note_mapping)
    device_poll_interval: float = 5.0


@dataclass
class ServerConfig:
    """WebSocket server settings."""
    websocket_host: str = "0.0.0.0"
    websocket_port: int = 8765
    stats_interval: float = 2.0  # systemStats broadcast period


@dataclass
class NavigationConfig:
    """End-of-region engine timing."""
    poll_interval: float = 0.067  # ~15Hz
    end_threshold: float = 0.6
    past_end_tolerance: float = 0.1
    stopped_end_tolerance: float = 0.05
    restart_delay: float = 0.1
    settle_delay: float = 0.15
    seek_delay: float = 0.1
    count_in_bars: int = 2


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: Optional[str] = None


_SECTIONS = {
    'reaper': ReaperConfig,
    'midi': MidiConfig,
    'server': ServerConfig,
    'navigation': NavigationConfig,
    'logging': LoggingConfig,
}


@dataclass
class AppConfig:
    """Top-level application configuration."""
    reaper: ReaperConfig = field(default_factory=ReaperConfig)
    midi: MidiConfig = field(default_factory=MidiConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    navigation: NavigationConfig = field(default_factory=NavigationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    storage_dir: str = "setlists"

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "AppConfig":
        """
        Load config from a TOML file.

        Args:
            config_path: Path to the TOML file. If None, uses the
                REAPER_CONTROL_CONFIG env var or defaults to config.toml.

        Raises:
            ConfigError: If the file cannot be parsed or a value is out of range.
        """
        if config_path is None:
            config_path = os.getenv(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH)

        config_path = Path(config_path)

        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}. Using defaults.")
            config = cls()
        else:
            try:
                data = toml.load(config_path)
            except (toml.TomlDecodeError, OSError) as e:
                raise ConfigError(f"Failed to load config from {config_path}: {e}")
            config = cls.from_dict(data)
            logger.info(f"Loaded config from {config_path}")

        config._apply_env_overrides()
        config.validate()
        return config

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        config = cls()
        for key, value in data.items():
            if key == 'storage_dir':
                config.storage_dir = str(value)
                continue

            section_cls = _SECTIONS.get(key)
            if section_cls is None or not isinstance(value, dict):
                logger.warning(f"Ignoring unknown config entry: {key}")
                continue

            section = getattr(config, key)
            known = {f.name for f in fields(section_cls)}
            for param, param_value in value.items():
                if param not in known:
                    logger.warning(f"Ignoring unknown config key: {key}.{param}")
                    continue
                if key == 'midi' and param == 'note_mapping':
                    param_value = _parse_note_mapping(param_value)
                setattr(section, param, param_value)

        return config

    def _apply_env_overrides(self) -> None:
        host = os.getenv("REAPER_HOST")
        if host:
            self.reaper.host = host

        port = os.getenv("REAPER_PORT")
        if port:
            try:
                self.reaper.port = int(port)
            except ValueError:
                raise ConfigError(f"REAPER_PORT must be an integer, got {port!r}")

    def validate(self) -> None:
        """
        Check all values are in range.

        Raises:
            ConfigError: If any parameter is out of bounds.
        """
        for name, port in (
            ('reaper.port', self.reaper.port),
            ('reaper.osc_remote_port', self.reaper.osc_remote_port),
            ('reaper.osc_local_port', self.reaper.osc_local_port),
            ('server.websocket_port', self.server.websocket_port),
        ):
            if not isinstance(port, int) or not 1 <= port <= 65535:
                raise ConfigError(f"{name} must be in range 1-65535, got {port!r}")

        if self.reaper.adapter not in ('web', 'osc'):
            raise ConfigError(f"reaper.adapter must be 'web' or 'osc', got {self.reaper.adapter!r}")

        if self.reaper.protocol not in ('http', 'https'):
            raise ConfigError(f"reaper.protocol must be 'http' or 'https', got {self.reaper.protocol!r}")

        for name, value in (
            ('reaper.connection_timeout', self.reaper.connection_timeout),
            ('reaper.polling_interval', self.reaper.polling_interval),
            ('midi.device_poll_interval', self.midi.device_poll_interval),
            ('navigation.poll_interval', self.navigation.poll_interval),
            ('navigation.end_threshold', self.navigation.end_threshold),
            ('server.stats_interval', self.server.stats_interval),
        ):
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"{name} must be a positive number, got {value!r}")

        if self.reaper.project_check_every < 1:
            raise ConfigError("reaper.project_check_every must be at least 1")

        if self.navigation.count_in_bars < 0:
            raise ConfigError("navigation.count_in_bars must not be negative")

        channel = self.midi.channel
        if channel is not None and (not isinstance(channel, int) or not 0 <= channel <= 15):
            raise ConfigError(f"midi.channel must be in range 0-15, got {channel!r}")

        for note, event in self.midi.note_mapping.items():
            if not 0 <= note <= 127:
                raise ConfigError(f"MIDI note {note} out of range 0-127")
            if event not in MIDI_EVENTS:
                raise ConfigError(f"Unknown MIDI event {event!r} for note {note}")

        if logging.getLevelName(self.logging.level.upper()) not in range(0, 51):
            raise ConfigError(f"Unknown log level: {self.logging.level}")

    def to_dict(self) -> dict:
        data = asdict(self)
        # TOML keys must be strings
        data['midi']['note_mapping'] = {str(k): v for k, v in self.midi.note_mapping.items()}
        return data


def _parse_note_mapping(value: Any) -> Dict[int, str]:
    if not isinstance(value, dict):
        raise ConfigError("midi.note_mapping must be a table of note = event")
    try:
        return {int(note): str(event) for note, event in value.items()}
    except ValueError as e:
        raise ConfigError(f"Invalid MIDI note in note_mapping: {e}")


def configure_logging(config: LoggingConfig) -> None:
    """Configure root logging once at startup."""
    handlers = [logging.StreamHandler()]
    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(
        level=config.level.upper(),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
