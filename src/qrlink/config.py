"""Configuration management for qrlink."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

from qrlink.errors import ConfigError


DEFAULT_PROVIDER = "qrlink.providers.simulated:create_provider"


@dataclass
class PairingConfig:
    """Lineage registry and observer settings."""

    max_sessions: int = 10
    retain_terminal: float = 30.0  # seconds a finished lineage stays readable
    keepalive_interval: float = 15.0  # SSE keep-alive tick
    queue_size: int = 16  # per-observer queue bound


@dataclass
class ReconnectConfig:
    """Backoff settings for retryable disconnects."""

    base_delay: float = 2.0
    max_delay: float = 60.0


@dataclass
class CaptureConfig:
    """Credential capture timing."""

    recheck_delay: float = 2.0
    settle_delay: float = 0.0
    clear_after_delivery: bool = True


@dataclass
class LivenessConfig:
    """Trivial liveness echo."""

    command: str = "ping"
    reply: str = "pong"


@dataclass
class LoggingConfig:
    """Log level, destination and library log routing."""

    level: str = "INFO"
    file: str | None = None
    access_log: bool = False  # aiohttp.access, one line per finished request
    library_level: str = "WARNING"  # aiohttp.server, aiohttp.web, asyncio


@dataclass
class Config:
    """Service configuration."""

    port: int = 3000
    bind_address: str = "0.0.0.0"
    session_dir: str = str(Path.home() / ".local" / "share" / "qrlink" / "sessions")
    provider: str = DEFAULT_PROVIDER
    pairing: PairingConfig = field(default_factory=PairingConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "qrlink" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError:
        return None


def _positive(section: str, name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{name} must be a number, got {value!r}")
    if number < 0:
        raise ConfigError(f"{section}.{name} must not be negative, got {value!r}")
    return number


def _flag(section: str, name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{section}.{name} must be true or false, got {value!r}")
    return value


def _level_name(section: str, name: str, value: Any) -> str:
    if not isinstance(value, str) or not isinstance(logging.getLevelName(value.upper()), int):
        raise ConfigError(f"{section}.{name} must be a log level name, got {value!r}")
    return value.upper()


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.

    Raises:
        ConfigError: If a setting has the wrong type or an unusable value.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if data is None:
        return Config()

    pairing_data = data.get("pairing", {})
    pairing_config = PairingConfig(
        max_sessions=int(
            _positive(
                "pairing",
                "max_sessions",
                pairing_data.get("max_sessions", PairingConfig.max_sessions),
            )
        ),
        retain_terminal=_positive(
            "pairing",
            "retain_terminal",
            pairing_data.get("retain_terminal", PairingConfig.retain_terminal),
        ),
        keepalive_interval=_positive(
            "pairing",
            "keepalive_interval",
            pairing_data.get("keepalive_interval", PairingConfig.keepalive_interval),
        ),
        queue_size=int(
            _positive(
                "pairing",
                "queue_size",
                pairing_data.get("queue_size", PairingConfig.queue_size),
            )
        ),
    )

    if pairing_config.max_sessions < 1 or pairing_config.queue_size < 1:
        raise ConfigError("pairing.max_sessions and pairing.queue_size must be at least 1")
    if pairing_config.keepalive_interval <= 0:
        raise ConfigError("pairing.keepalive_interval must be positive")

    reconnect_data = data.get("reconnect", {})
    reconnect_config = ReconnectConfig(
        base_delay=_positive(
            "reconnect",
            "base_delay",
            reconnect_data.get("base_delay", ReconnectConfig.base_delay),
        ),
        max_delay=_positive(
            "reconnect",
            "max_delay",
            reconnect_data.get("max_delay", ReconnectConfig.max_delay),
        ),
    )
    if reconnect_config.base_delay <= 0:
        raise ConfigError("reconnect.base_delay must be positive")
    if reconnect_config.max_delay < reconnect_config.base_delay:
        raise ConfigError("reconnect.max_delay must be >= reconnect.base_delay")

    capture_data = data.get("capture", {})
    capture_config = CaptureConfig(
        recheck_delay=_positive(
            "capture",
            "recheck_delay",
            capture_data.get("recheck_delay", CaptureConfig.recheck_delay),
        ),
        settle_delay=_positive(
            "capture",
            "settle_delay",
            capture_data.get("settle_delay", CaptureConfig.settle_delay),
        ),
        clear_after_delivery=_flag(
            "capture",
            "clear_after_delivery",
            capture_data.get("clear_after_delivery", CaptureConfig.clear_after_delivery),
        ),
    )

    liveness_data = data.get("liveness", {})
    liveness_config = LivenessConfig(
        command=liveness_data.get("command", LivenessConfig.command),
        reply=liveness_data.get("reply", LivenessConfig.reply),
    )

    logging_data = data.get("logging", {})
    logging_config = LoggingConfig(
        level=_level_name(
            "logging", "level", logging_data.get("level", LoggingConfig.level)
        ),
        file=logging_data.get("file", LoggingConfig.file),
        access_log=_flag(
            "logging",
            "access_log",
            logging_data.get("access_log", LoggingConfig.access_log),
        ),
        library_level=_level_name(
            "logging",
            "library_level",
            logging_data.get("library_level", LoggingConfig.library_level),
        ),
    )

    return Config(
        port=data.get("port", Config.port),
        bind_address=data.get("bind_address", Config.bind_address),
        session_dir=data.get("session_dir", Config().session_dir),
        provider=data.get("provider", Config.provider),
        pairing=pairing_config,
        reconnect=reconnect_config,
        capture=capture_config,
        liveness=liveness_config,
        logging=logging_config,
    )
