from __future__ import annotations
"""Application settings persistence helpers."""

from dataclasses import asdict, dataclass, fields
import json
import logging
from pathlib import Path

LOGGER = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * 1024 * 1024
PREFIX_COLLISION_POLICIES = ("folder", "object")


@dataclass
class AppSettings:
    """Tunables for listing, retry and transfer behaviour."""

    page_size: int = 1000
    max_attempts: int = 3
    backoff_base: float = 0.2
    backoff_max: float = 5.0
    chunk_size: int = 8 * 1024 * 1024
    multipart_threshold: int = 16 * 1024 * 1024
    max_concurrent_transfers: int = 4
    progress_interval: float = 0.25
    prefix_collision: str = "folder"

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)


_INT_LIMITS = {
    "page_size": (1, 1000),
    "max_attempts": (1, 10),
    "chunk_size": (MIN_PART_SIZE, None),
    "multipart_threshold": (1, None),
    "max_concurrent_transfers": (1, 64),
}
_FLOAT_FIELDS = ("backoff_base", "backoff_max", "progress_interval")


def normalize_settings(data: dict) -> AppSettings:
    """Coerce raw values into :class:`AppSettings`, field by field."""

    defaults = AppSettings()
    values = asdict(defaults)
    for name, (low, high) in _INT_LIMITS.items():
        try:
            value = int(data.get(name, values[name]))
        except (TypeError, ValueError):
            continue
        if value < low:
            continue
        values[name] = min(value, high) if high else value
    for name in _FLOAT_FIELDS:
        try:
            value = float(data.get(name, values[name]))
        except (TypeError, ValueError):
            continue
        if value >= 0:
            values[name] = value
    policy = data.get("prefix_collision", defaults.prefix_collision)
    if policy in PREFIX_COLLISION_POLICIES:
        values["prefix_collision"] = policy
    return AppSettings(**values)


class SettingsStorage:
    """JSON-backed persistence for :class:`AppSettings`."""

    def __init__(self, storage_path: str | Path | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".s3nav_settings.json"
        self._path = Path(storage_path)

    def load(self) -> AppSettings:
        if not self._path.exists():
            return AppSettings()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Unable to read settings file %s; using defaults", self._path)
            return AppSettings()
        if not isinstance(data, dict):
            return AppSettings()
        return normalize_settings(data)

    def save(self, settings: AppSettings) -> None:
        payload = asdict(normalize_settings({f.name: getattr(settings, f.name) for f in fields(settings)}))
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as exc:
            # The in-memory settings still apply for this session.
            LOGGER.warning("Settings not saved to %s: %s", self._path, exc)
