"""
config.py
Settings for the NVD cache: defaults, YAML config file and environment overrides.
"""

import os
import logging
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Dict, List, Any, Optional

import yaml

from nvdsync.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

MB = 1024 * 1024

CLIENT_VERSION = "2.0"
USER_AGENT = f"nvdsync-Security-Scanner/{CLIENT_VERSION}"
API_KEY_HEADER = "apiKey"

DEFAULT_CACHE_DIR = Path.home() / ".nvdsync" / "nvd-cache"
DEFAULT_API_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"
DEFAULT_FEED_BASE = "https://nvd.nist.gov/feeds/json/cve/1.1/"
DEFAULT_FEED_FILES = [
    "nvdcve-1.1-modified.json.gz",
    "nvdcve-1.1-recent.json.gz",
]

# Environment variable -> settings field
ENV_OVERRIDES = {
    "NVD_API_KEY": "api_key",
    "NVDSYNC_CACHE_DIR": "cache_dir",
    "NVDSYNC_DATABASE_URL": "database_url",
    "NVDSYNC_VALIDITY_HOURS": "cache_validity_hours",
    "NVDSYNC_UPDATE_THRESHOLD": "update_threshold_percent",
    "NVDSYNC_REMOTE_VALIDATION": "remote_validation",
    "NVDSYNC_LOG_LEVEL": "log_level",
}

CONFIG_ENV = "NVDSYNC_CONFIG"


@dataclass
class Settings:
    """Runtime settings for the cache, downloader and probes."""
    cache_dir: Path = DEFAULT_CACHE_DIR
    database_file: str = "odc.mv.db"
    database_dir: Optional[Path] = None
    database_url: Optional[str] = None
    feed_urls: List[str] = field(default_factory=lambda: [DEFAULT_FEED_BASE + name for name in DEFAULT_FEED_FILES])
    api_url: str = DEFAULT_API_URL
    probe_url: str = DEFAULT_API_URL
    api_key: Optional[str] = None

    cache_validity_hours: float = 24.0
    update_threshold_percent: float = 5.0
    remote_validation: bool = False
    min_recheck_minutes: float = 60.0
    anonymous_recheck_minutes: float = 240.0

    min_database_size_bytes: int = 50 * MB
    header_signature: str = "H2"
    header_scan_bytes: int = 32
    min_free_disk_bytes: int = 500 * MB

    connect_timeout: float = 30.0
    read_timeout: float = 60.0
    max_concurrent_downloads: int = 4
    chunk_size_bytes: int = 1 * MB
    recent_file_window_seconds: float = 3600.0

    feed_domains: List[str] = field(default_factory=lambda: ["nvd.nist.gov"])
    log_level: str = "INFO"

    def __post_init__(self):
        self.cache_dir = Path(self.cache_dir).expanduser()
        if self.database_dir is not None:
            self.database_dir = Path(self.database_dir).expanduser()

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    @property
    def database_path(self) -> Path:
        base = self.database_dir if self.database_dir is not None else self.cache_dir
        return base / self.database_file

    @property
    def metadata_path(self) -> Path:
        return self.cache_dir / "nvd-cache.properties"

    @property
    def marker_path(self) -> Path:
        return self.cache_dir / ".nvd-initialized"

    @property
    def checksum_path(self) -> Path:
        return self.cache_dir / "database.sha256"

    @property
    def backup_dir(self) -> Path:
        return self.cache_dir / "corrupted-backups"

    @property
    def header_signature_bytes(self) -> bytes:
        return self.header_signature.encode("ascii")

    def validate(self) -> None:
        """Raise ConfigurationError when a value is out of range."""
        if self.cache_validity_hours <= 0:
            raise ConfigurationError(f"cache_validity_hours must be positive, got {self.cache_validity_hours}")
        if self.update_threshold_percent < 0:
            raise ConfigurationError(f"update_threshold_percent must be >= 0, got {self.update_threshold_percent}")
        if self.min_recheck_minutes < 0 or self.anonymous_recheck_minutes < 0:
            raise ConfigurationError("re-check intervals must not be negative")
        if self.chunk_size_bytes <= 0:
            raise ConfigurationError(f"chunk_size_bytes must be positive, got {self.chunk_size_bytes}")
        if self.max_concurrent_downloads < 1:
            raise ConfigurationError(f"max_concurrent_downloads must be >= 1, got {self.max_concurrent_downloads}")
        if self.connect_timeout <= 0 or self.read_timeout <= 0:
            raise ConfigurationError("timeouts must be positive")
        if self.min_database_size_bytes < 0 or self.min_free_disk_bytes < 0:
            raise ConfigurationError("size limits must not be negative")
        if not self.header_signature:
            raise ConfigurationError("header_signature must not be empty")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["cache_dir"] = str(self.cache_dir)
        data["database_dir"] = str(self.database_dir) if self.database_dir else None
        data["api_key"] = "***" if self.api_key else None
        return data


def _coerce(name: str, value: Any, current: Any) -> Any:
    """Convert a raw YAML/env value to the type of the default."""
    if value is None:
        return None
    try:
        if isinstance(current, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, list):
            if isinstance(value, str):
                return [item.strip() for item in value.split(",") if item.strip()]
            return list(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {value!r} ({e})") from e
    return value


def _load_yaml_config(file_path: Path) -> Dict[str, Any]:
    """Load the YAML configuration file."""
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read config file {file_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {file_path} must contain a mapping")
    # Allow both a bare mapping and one nested under "nvdsync:"
    if isinstance(data.get("nvdsync"), dict):
        data = data["nvdsync"]
    return data


def load_settings(config_file: Optional[str] = None,
                  environ: Optional[Dict[str, str]] = None,
                  **overrides) -> Settings:
    """
    Build settings from defaults, a YAML file, the environment and explicit overrides.

    Args:
        config_file: Path to a YAML file. Falls back to $NVDSYNC_CONFIG when omitted.
        environ: Environment mapping (defaults to os.environ)
        overrides: Field values that win over everything else; None values are ignored

    Returns:
        Validated Settings instance
    """
    env = os.environ if environ is None else environ
    settings = Settings()
    known = {f.name for f in fields(Settings)}
    values: Dict[str, Any] = {}

    config_file = config_file or env.get(CONFIG_ENV)
    if config_file:
        for key, value in _load_yaml_config(Path(config_file).expanduser()).items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            values[key] = value

    for env_name, field_name in ENV_OVERRIDES.items():
        raw = env.get(env_name)
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()

    for key, value in overrides.items():
        if key not in known:
            raise ConfigurationError(f"Unknown setting: {key}")
        if value is not None:
            values[key] = value

    for key, value in values.items():
        setattr(settings, key, _coerce(key, value, getattr(settings, key)))

    settings.__post_init__()
    settings.validate()
    return settings
