from __future__ import annotations
"""Remote profile models, registry and persistence."""
from dataclasses import dataclass, replace
import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Union
from urllib.parse import urlparse

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .errors import UnknownRemoteError

LOGGER = logging.getLogger(__name__)

DEFAULT_REGION = "auto"
REQUIRED_FIELDS = ("name", "access_key_id", "secret_access_key", "bucket_name", "endpoint")


@dataclass(frozen=True)
class RemoteProfile:
    """Describes one configured bucket endpoint."""

    name: str
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    endpoint: str
    region: str = DEFAULT_REGION

    def __repr__(self) -> str:
        return (
            f"RemoteProfile(name={self.name!r}, bucket_name={self.bucket_name!r}, "
            f"endpoint={self.endpoint!r}, region={self.region!r})"
        )

    def with_changes(self, **changes: str) -> "RemoteProfile":
        return replace(self, **changes)


def profile_from_mapping(entry: Mapping[str, Any]) -> RemoteProfile:
    """Build a profile from a raw configuration entry.

    Raises:
        ValueError: when a field is missing, empty or not a string, or the
            endpoint is not an http(s) URL.
    """

    values: dict[str, str] = {}
    for name in REQUIRED_FIELDS:
        value = entry.get(name)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Missing or invalid {name}")
        values[name] = value.strip()
    region = entry.get("region") or DEFAULT_REGION
    if not isinstance(region, str):
        raise ValueError("Missing or invalid region")
    parsed = urlparse(values["endpoint"])
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Endpoint is not an http(s) URL: {values['endpoint']}")
    return RemoteProfile(region=region.strip() or DEFAULT_REGION, **values)


class ProfileRegistry:
    """Process-wide set of remote profiles keyed by name."""

    def __init__(self, profiles: Iterable[RemoteProfile] = ()):
        self._profiles: dict[str, RemoteProfile] = {}
        self.warnings: list[str] = []
        for profile in profiles:
            self.add(profile)

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __iter__(self) -> Iterator[RemoteProfile]:
        return iter(list(self._profiles.values()))

    def __len__(self) -> int:
        return len(self._profiles)

    def names(self) -> list[str]:
        return sorted(self._profiles)

    def get(self, name: str) -> RemoteProfile:
        try:
            return self._profiles[name]
        except KeyError:
            raise UnknownRemoteError(f"Remote '{name}' does not exist") from None

    def add(self, profile: RemoteProfile) -> None:
        if profile.name in self._profiles:
            raise ValueError(f"Remote '{profile.name}' already exists")
        self._profiles[profile.name] = profile

    def replace(self, profile: RemoteProfile, *, original_name: str | None = None) -> RemoteProfile | None:
        """Swap in an edited profile and return the one it replaced."""

        previous_name = original_name or profile.name
        previous = self._profiles.pop(previous_name, None)
        if previous is None:
            raise UnknownRemoteError(f"Remote '{previous_name}' does not exist")
        if profile.name != previous_name and profile.name in self._profiles:
            self._profiles[previous_name] = previous
            raise ValueError(f"Remote '{profile.name}' already exists")
        self._profiles[profile.name] = profile
        return previous

    def remove(self, name: str) -> RemoteProfile:
        try:
            return self._profiles.pop(name)
        except KeyError:
            raise UnknownRemoteError(f"Remote '{name}' does not exist") from None


def load_profiles(entries: Iterable[Union[Mapping[str, Any], RemoteProfile]]) -> ProfileRegistry:
    """Build a registry, skipping malformed entries with a warning."""

    registry = ProfileRegistry()
    for index, entry in enumerate(entries):
        if isinstance(entry, RemoteProfile):
            label = entry.name
        elif isinstance(entry, Mapping):
            label = entry.get("name") or f"#{index}"
        else:
            label = f"#{index}"
        try:
            if isinstance(entry, RemoteProfile):
                profile = entry
            elif isinstance(entry, Mapping):
                profile = profile_from_mapping(entry)
            else:
                raise ValueError("Entry is not a table")
            registry.add(profile)
        except ValueError as exc:
            message = f"Skipping remote '{label}': {exc}"
            LOGGER.warning(message)
            registry.warnings.append(message)
    LOGGER.debug("Loaded %d remote profile(s)", len(registry))
    return registry


class KeychainStore:
    """Secret access keys held in the OS keychain, one entry per remote.

    Keychain failures never propagate: a remote whose secret cannot be read
    loads without one and is reported by :class:`ProfileStorage`.
    """

    def __init__(self, service_name: str = "s3nav"):
        self._service_name = service_name

    def get_secret(self, profile_name: str) -> str:
        if not profile_name:
            return ""
        secret = self._call("read", profile_name, keyring.get_password)
        return secret or ""

    def set_secret(self, profile_name: str, secret_key: str) -> None:
        if not profile_name:
            return
        if secret_key:
            self._call("store", profile_name, keyring.set_password, secret_key)
        else:
            self.delete_secret(profile_name)

    def delete_secret(self, profile_name: str) -> None:
        if profile_name:
            self._call("delete", profile_name, keyring.delete_password)

    def _call(self, action: str, profile_name: str, operation: Callable[..., Any], *args: Any) -> Any:
        try:
            return operation(self._service_name, profile_name, *args)
        except PasswordDeleteError:
            LOGGER.debug("No keychain entry to delete for remote '%s'", profile_name)
        except KeyringError as exc:
            LOGGER.warning("Keychain %s failed for remote '%s': %s", action, profile_name, exc)
        return None


class ProfileStorage:
    """JSON-backed store for remote profiles; secrets live in the keychain."""

    def __init__(self, storage_path: str | Path | None = None, keychain: KeychainStore | None = None):
        if storage_path is None:
            storage_path = Path.home() / ".s3nav_remotes.json"
        self._path = Path(storage_path)
        self._keychain = keychain or KeychainStore()

    def load_entries(self) -> list[dict[str, str]]:
        """Return raw profile entries with secrets resolved from the keychain."""

        data = self._read_data()
        entries: list[dict[str, str]] = []
        sanitized: list[dict[str, Any]] = []
        saw_plaintext = False
        for entry in data:
            if not isinstance(entry, dict):
                continue
            resolved = dict(entry)
            name = resolved.get("name")
            secret = resolved.pop("secret_access_key", "")
            if secret and isinstance(name, str):
                saw_plaintext = True
                self._keychain.set_secret(name, secret)
            elif isinstance(name, str):
                secret = self._keychain.get_secret(name)
            sanitized.append(dict(resolved))
            resolved["secret_access_key"] = secret
            entries.append(resolved)
        if saw_plaintext:
            self._write_data(sanitized)
        return entries

    def load(self) -> ProfileRegistry:
        return load_profiles(self.load_entries())

    def save(self, profiles: Iterable[RemoteProfile]) -> None:
        data = []
        current_names = set()
        for profile in profiles:
            self._keychain.set_secret(profile.name, profile.secret_access_key)
            current_names.add(profile.name)
            data.append(
                {
                    "name": profile.name,
                    "access_key_id": profile.access_key_id,
                    "bucket_name": profile.bucket_name,
                    "endpoint": profile.endpoint,
                    "region": profile.region,
                }
            )
        for name in self._load_profile_names() - current_names:
            self._keychain.delete_secret(name)
        self._write_data(data)

    def _read_data(self) -> list[Any]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Unable to read remotes file %s", self._path)
            return []
        return data if isinstance(data, list) else []

    def _load_profile_names(self) -> set[str]:
        names = set()
        for entry in self._read_data():
            name = entry.get("name") if isinstance(entry, dict) else None
            if isinstance(name, str) and name:
                names.add(name)
        return names

    def _write_data(self, data: list[dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")
