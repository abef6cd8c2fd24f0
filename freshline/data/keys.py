"""Cache key builders for the data facade.

Rules:
- Every key starts with ``<resource>:v1:`` so all variants of one resource can
  be dropped with a single prefix invalidation.
- Always include the principal scope: two roles never share a cached answer.
- Normalize filters (order, empty values, unordered collections) so the same
  question always maps to the same key.
- Never put raw filter values (search text, phone numbers) in a key; they are
  hashed.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from freshline.access.policy import Principal

VERSION = "v1"


@dataclass(frozen=True)
class Key:
    value: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


def resource_name(resource: str) -> str:
    """The canonical (stripped) resource name; ``ValueError`` if unusable in a key."""

    name = (resource or "").strip()
    if not name or ":" in name:
        raise ValueError(f"Invalid resource name: {resource!r}")
    return name


def _principal_scope(principal: Optional[Principal]) -> str:
    if principal is None:
        return "anon"
    return principal.scope


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return normalize_filters(value)
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize_value(v) for v in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [_normalize_value(v) for v in value]
    if isinstance(value, str):
        return value.strip()
    return value


def normalize_filters(filters: Optional[Mapping[str, Any]]) -> dict:
    """Drop empty values and normalize nested collections; key order is irrelevant."""

    if not filters:
        return {}
    normalized = {}
    for name in sorted(filters):
        value = filters[name]
        if value is None or value == "" or value == [] or value == ():
            continue
        normalized[str(name)] = _normalize_value(value)
    return normalized


def filters_digest(filters: Optional[Mapping[str, Any]]) -> str:
    normalized = normalize_filters(filters)
    if not normalized:
        return "all"
    canonical = json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]


def resource_prefix(resource: str) -> str:
    return f"{resource_name(resource)}:{VERSION}:"


def resource_key(
    resource: str,
    *,
    principal: Optional[Principal] = None,
    filters: Optional[Mapping[str, Any]] = None,
) -> Key:
    return Key(f"{resource_prefix(resource)}{_principal_scope(principal)}:{filters_digest(filters)}")


def search_key(*, scope: str, query: str) -> Key:
    normalized = " ".join(query.lower().split())
    digest = hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:16]
    return Key(f"search:{VERSION}:{scope}:{digest}")


__all__ = [
    "Key",
    "filters_digest",
    "normalize_filters",
    "resource_key",
    "resource_name",
    "resource_prefix",
    "search_key",
]
