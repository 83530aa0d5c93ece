"""
Configuration management and loading.

Handles metering settings and the ledger location.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml


DEFAULT_FREE_QUOTA_THRESHOLD = 100
DEFAULT_SETTLE_DELAY_MS = 5000
DEFAULT_QUOTA_REFRESH_INTERVAL_MS = 10000
DEFAULT_LEDGER_PATH = "rental_meter_ledger.db"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class MeteringConfig:
    """Quota and timing settings for one metered worker."""
    free_quota_threshold: int = DEFAULT_FREE_QUOTA_THRESHOLD
    settle_delay_ms: int = DEFAULT_SETTLE_DELAY_MS
    quota_refresh_interval_ms: int = DEFAULT_QUOTA_REFRESH_INTERVAL_MS

    def __post_init__(self):
        """Validate metering values."""
        if not _is_int(self.free_quota_threshold) or self.free_quota_threshold < 0:
            raise ValueError("free_quota_threshold must be an integer >= 0")
        if not _is_int(self.settle_delay_ms) or self.settle_delay_ms <= 0:
            raise ValueError("settle_delay_ms must be an integer > 0")
        if not _is_int(self.quota_refresh_interval_ms) or self.quota_refresh_interval_ms <= 0:
            raise ValueError("quota_refresh_interval_ms must be an integer > 0")

    @property
    def settle_delay(self) -> float:
        """Settle delay in seconds."""
        return self.settle_delay_ms / 1000

    @property
    def quota_refresh_interval(self) -> float:
        """Quota refresh interval in seconds."""
        return self.quota_refresh_interval_ms / 1000


@dataclass(frozen=True)
class LedgerConfig:
    """Location of the SQLite ledger."""
    path: str = DEFAULT_LEDGER_PATH

    def __post_init__(self):
        if not isinstance(self.path, str) or not self.path.strip():
            raise ValueError("ledger path must be a non-empty string")


@dataclass(frozen=True)
class MeterConfig:
    """Complete rental meter configuration."""
    metering: MeteringConfig = field(default_factory=MeteringConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)


def load_meter_config(path: str) -> MeterConfig:
    """Load and validate meter configuration from a YAML file.

    Validation is strict so that a typo never silently falls back to a
    default quota or delay.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Meter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'metering', 'ledger'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'metering' not in raw_config:
        raise ValueError("Missing required 'metering' section")

    metering = _parse_metering_config(raw_config['metering'])
    ledger = _parse_ledger_config(raw_config.get('ledger', {}))

    return MeterConfig(metering=metering, ledger=ledger)


def _parse_metering_config(data: Dict) -> MeteringConfig:
    """Parse and validate the 'metering' section.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'metering' must be a dictionary")

    allowed_keys = {'free_quota_threshold', 'settle_delay_ms', 'quota_refresh_interval_ms'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in metering: {unknown_keys}")

    for key in allowed_keys & set(data.keys()):
        if not _is_int(data[key]):
            raise ValueError(f"'{key}' in metering must be an integer")

    return MeteringConfig(
        free_quota_threshold=data.get('free_quota_threshold', DEFAULT_FREE_QUOTA_THRESHOLD),
        settle_delay_ms=data.get('settle_delay_ms', DEFAULT_SETTLE_DELAY_MS),
        quota_refresh_interval_ms=data.get(
            'quota_refresh_interval_ms', DEFAULT_QUOTA_REFRESH_INTERVAL_MS
        ),
    )


def _parse_ledger_config(data: Dict) -> LedgerConfig:
    if data is None:
        return LedgerConfig()
    if not isinstance(data, dict):
        raise ValueError("'ledger' must be a dictionary")

    unknown_keys = set(data.keys()) - {'path'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in ledger: {unknown_keys}")

    return LedgerConfig(path=data.get('path', DEFAULT_LEDGER_PATH))
