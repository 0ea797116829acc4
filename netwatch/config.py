"""Detection configuration: thresholds, horizons, port sets, intervals.

The engine holds one DetectionConfig by reference and reads it on every
evaluation, so ``update()`` (or a reload from disk) takes effect on the next
packet without a restart.  Values are loaded from YAML; anything not in the
file keeps its default.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

import yaml

from netwatch.errors import ConfigError

# SSH, Telnet, FTP, RPC, NetBIOS, SMB, SQL Server, MySQL, RDP, PostgreSQL,
# Redis, Elasticsearch, MongoDB.
DEFAULT_SENSITIVE_PORTS = frozenset(
    {21, 22, 23, 135, 139, 445, 1433, 3306, 3389, 5432, 6379, 9200, 27017}
)

# Well-known service ports used to classify a scan as COMMON_PORTS.
DEFAULT_COMMON_PORTS = frozenset(
    {21, 22, 23, 25, 53, 80, 110, 143, 443, 993, 995, 3389}
)

_PORT_SET_FIELDS = ("sensitive_ports", "common_ports")


@dataclass(frozen=True)
class DetectionSettings:
    """An immutable snapshot of every tunable the engine reads."""

    enable_auto_detection: bool = True

    # Per-packet rule thresholds
    traffic_spike_threshold: int = 1000
    port_scan_threshold: int = 10
    large_packet_threshold: int = 1500
    connection_attempt_threshold: int = 50
    time_window_minutes: int = 5
    suspicious_port_threshold: int = 3

    # Retention horizons
    connection_retention_minutes: int = 60
    port_scan_retention_minutes: int = 30
    traffic_retention_minutes: int = 10
    dedup_cooldown_minutes: int = 5

    # Batch analysis
    analysis_interval_seconds: int = 300
    analysis_window_minutes: int = 5
    heavy_hitter_factor: int = 10
    protocol_flood_share: float = 0.5
    external_source_threshold: int = 20

    sweep_interval_seconds: int = 120
    max_description_length: int = 1000

    sensitive_ports: frozenset[int] = field(default=DEFAULT_SENSITIVE_PORTS)
    common_ports: frozenset[int] = field(default=DEFAULT_COMMON_PORTS)

    def to_dict(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = sorted(value) if f.name in _PORT_SET_FIELDS else value
        return out


_FIELD_TYPES = {f.name: f for f in fields(DetectionSettings)}


class DetectionConfig:
    """Thread-safe holder for the current DetectionSettings.

    Attribute access is forwarded to the current snapshot, so callers write
    ``config.port_scan_threshold`` and always see the latest value.
    """

    def __init__(self, settings: DetectionSettings | None = None, **overrides):
        self._lock = threading.Lock()
        base = settings or DetectionSettings()
        self._settings = _apply(base, overrides, source="<overrides>")

    def __getattr__(self, name):
        # Only reached for names not on the instance itself.
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._settings, name)

    @property
    def settings(self) -> DetectionSettings:
        return self._settings

    def update(self, **overrides) -> DetectionSettings:
        """Swap in new values.  Validation failures leave the old snapshot intact."""
        with self._lock:
            self._settings = _apply(self._settings, overrides, source="<update>")
            return self._settings

    def reload(self, path: str | Path) -> DetectionSettings:
        """Re-read a YAML file on top of the defaults."""
        loaded = load_settings(path)
        with self._lock:
            self._settings = loaded
            return loaded

    def to_dict(self) -> dict:
        return self._settings.to_dict()


def load_settings(path: str | Path) -> DetectionSettings:
    """Parse and validate a YAML config file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError(f"{path.name}: top level must be a mapping")

    # Accept either a flat mapping or one nested under "detection:".
    section = raw.get("detection", raw)
    if not isinstance(section, dict):
        raise ConfigError(f"{path.name}: 'detection' must be a mapping")

    return _apply(DetectionSettings(), section, source=path.name)


def load_config(path: str | Path | None = None) -> DetectionConfig:
    if path is None:
        return DetectionConfig()
    return DetectionConfig(load_settings(path))


def _apply(base: DetectionSettings, overrides: dict, source: str) -> DetectionSettings:
    if not overrides:
        return base

    cleaned = {}
    for key, value in overrides.items():
        if key not in _FIELD_TYPES:
            raise ConfigError(f"{source}: unknown setting '{key}'")
        cleaned[key] = _coerce(key, value, source)
    return replace(base, **cleaned)


def _coerce(key: str, value, source: str):
    default = _FIELD_TYPES[key].default

    if key in _PORT_SET_FIELDS:
        try:
            ports = frozenset(int(p) for p in value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{source}: '{key}' must be a list of ports") from e
        bad = [p for p in ports if not 0 < p < 65536]
        if bad:
            raise ConfigError(f"{source}: '{key}' has out-of-range ports {sorted(bad)}")
        return ports

    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{source}: '{key}' must be true or false")
        return value

    if isinstance(default, float):
        try:
            value = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{source}: '{key}' must be a number") from e
        if not 0 < value <= 1:
            raise ConfigError(f"{source}: '{key}' must be in (0, 1]")
        return value

    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{source}: '{key}' must be an integer")
    if value <= 0:
        raise ConfigError(f"{source}: '{key}' must be positive")
    return value
