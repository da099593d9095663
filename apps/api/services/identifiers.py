"""Identifier validation for tenant namespaces, tables and columns."""

from __future__ import annotations

import re

from services.errors import InvalidIdentifier

_IDENTIFIER_PATTERN = re.compile(r"[A-Za-z0-9_]+")
_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]+")

MAX_IDENTIFIER_LENGTH = 63


def sanitize_identifier(name: str) -> str:
    """Return ``name`` unchanged if it only uses ``[A-Za-z0-9_]``.

    Invalid input is rejected, never coerced.
    """
    if not isinstance(name, str) or not _IDENTIFIER_PATTERN.fullmatch(name):
        raise InvalidIdentifier(
            f"Invalid identifier: {name!r}. Use only letters, digits and underscores.",
            details={"identifier": name if isinstance(name, str) else repr(name)},
        )
    return name


def quote_identifier(name: str) -> str:
    """Validate and double-quote an identifier for DDL/DML interpolation."""
    return f'"{sanitize_identifier(name)}"'


def normalize_name(base: str, fallback: str = "column") -> str:
    """Fold free-form text (headers, filenames) into a lowercase identifier."""
    cleaned = _NON_ALPHANUMERIC.sub("_", str(base or "").strip().lower())
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    return (cleaned or fallback)[:MAX_IDENTIFIER_LENGTH]


def normalize_headers(headers: list[str]) -> list[str]:
    """Normalize headers and disambiguate duplicates with numeric suffixes."""
    normalized: list[str] = []
    seen: set[str] = set()
    counters: dict[str, int] = {}
    for header in headers:
        base = normalize_name(header)
        name = base
        while name in seen:
            counters[base] = counters.get(base, 0) + 1
            suffix = f"_{counters[base]}"
            name = f"{base[: MAX_IDENTIFIER_LENGTH - len(suffix)]}{suffix}"
        seen.add(name)
        normalized.append(name)
    return normalized
