"""Configuration management for pairlink."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml

STORE_BACKENDS = ("memory", "json", "remote")


@dataclass
class StoreConfig:
    """Which store backs pairing and content."""

    backend: str = "json"
    path: str = "~/.local/share/pairlink/store.json"  # json backend
    url: str = "http://127.0.0.1:8787"  # remote backend


@dataclass
class RelayConfig:
    """Relay server bind settings."""

    bind_address: str = "127.0.0.1"
    port: int = 8787


@dataclass
class PairingConfig:
    """Pairing policy."""

    pending_ttl: float = 600.0  # seconds, 0 = pending codes never expire
    reap_interval: float = 30.0  # seconds
    pin_max_attempts: int = 20


@dataclass
class ContentConfig:
    """Shared content limits."""

    max_length: int = 10000  # characters


@dataclass
class Config:
    """pairlink configuration."""

    log_level: str = "INFO"
    log_file: str | None = None
    store: StoreConfig = field(default_factory=StoreConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    pairing: PairingConfig = field(default_factory=PairingConfig)
    content: ContentConfig = field(default_factory=ContentConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "pairlink" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        data = yaml.safe_load(content)
    except yaml.YAMLError:
        return None
    return data if isinstance(data, dict) else None


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


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
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if data is None:
        return Config()

    store_data = _section(data, "store")
    backend = store_data.get("backend", StoreConfig.backend)
    if backend not in STORE_BACKENDS:
        backend = StoreConfig.backend
    store_config = StoreConfig(
        backend=backend,
        path=store_data.get("path", StoreConfig.path),
        url=store_data.get("url", StoreConfig.url),
    )

    relay_data = _section(data, "relay")
    relay_config = RelayConfig(
        bind_address=relay_data.get("bind_address", RelayConfig.bind_address),
        port=relay_data.get("port", RelayConfig.port),
    )

    pairing_data = _section(data, "pairing")
    pairing_config = PairingConfig(
        pending_ttl=pairing_data.get("pending_ttl", PairingConfig.pending_ttl),
        reap_interval=pairing_data.get("reap_interval", PairingConfig.reap_interval),
        pin_max_attempts=pairing_data.get(
            "pin_max_attempts", PairingConfig.pin_max_attempts
        ),
    )

    content_data = _section(data, "content")
    content_config = ContentConfig(
        max_length=content_data.get("max_length", ContentConfig.max_length),
    )

    return Config(
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        store=store_config,
        relay=relay_config,
        pairing=pairing_config,
        content=content_config,
    )
