from __future__ import annotations
"""UI-agnostic helpers for formatting sizes, dates and keys."""
from datetime import datetime

DELIMITER = "/"
SIZE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def format_size(size: int | None) -> str:
    if size is None:
        return "-"
    value = float(max(size, 0))
    for suffix in SIZE_UNITS:
        if value < 1024 or suffix == SIZE_UNITS[-1]:
            if suffix == "B":
                return f"{int(value)} {suffix}"
            if value >= 100:
                return f"{value:.0f} {suffix}"
            if value >= 10:
                return f"{value:.1f} {suffix}"
            return f"{value:.2f} {suffix}"
        value /= 1024
    return f"{size} B"


def format_last_modified(last_modified: object) -> str:
    if not last_modified:
        return "-"
    if isinstance(last_modified, datetime):
        return last_modified.strftime("%Y-%m-%d %H:%M:%S %Z").strip() or last_modified.isoformat()
    try:
        return last_modified.strftime("%Y-%m-%d %H:%M:%S %Z").strip() or str(last_modified)
    except AttributeError:
        return str(last_modified)


def normalize_prefix(prefix: str, delimiter: str = DELIMITER) -> str:
    """Strip leading delimiters and ensure a non-empty prefix ends with one."""
    cleaned = prefix.strip().lstrip(delimiter)
    if cleaned and not cleaned.endswith(delimiter):
        cleaned += delimiter
    return cleaned


def compose_key(prefix: str, name: str, delimiter: str = DELIMITER) -> str:
    key_name = name.strip().lstrip(delimiter)
    if not key_name:
        raise ValueError("Object name cannot be empty")
    return f"{normalize_prefix(prefix, delimiter)}{key_name}"


def parent_prefix(key: str, delimiter: str = DELIMITER) -> str:
    """Return the prefix a key is listed under.

    ``parent_prefix("a/b.txt") == "a/"`` and ``parent_prefix("a/b/") == "a/"``.
    """
    trimmed = key.rstrip(delimiter) if key.endswith(delimiter) else key
    head, sep, _ = trimmed.rpartition(delimiter)
    return f"{head}{sep}" if sep else ""


def ancestor_prefixes(prefix: str, delimiter: str = DELIMITER) -> list[str]:
    """All strict ancestors of ``prefix``, root first."""
    ancestors = []
    current = prefix
    while current:
        current = parent_prefix(current, delimiter)
        ancestors.append(current)
    ancestors.reverse()
    return ancestors


def display_name(key: str, prefix: str, delimiter: str = DELIMITER) -> str:
    """Name of ``key`` relative to the listed ``prefix``, without trailing delimiter."""
    relative = key[len(prefix):] if key.startswith(prefix) else key
    return relative.rstrip(delimiter) or relative


def suggest_local_filename(key: str, delimiter: str = DELIMITER) -> str:
    cleaned = key.strip().rstrip(delimiter)
    if not cleaned:
        return "local-file"
    name = cleaned.rsplit(delimiter, 1)[-1]
    return name or "local-file"
