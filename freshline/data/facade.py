"""Data access facade: the only path from callers to the remote store.

``get``:    policy check -> fresh cache hit -> (single-flight) remote fetch -> populate
``mutate``: policy check -> remote write -> invalidate every cached variant of the resource
            and of the resources registered as related to it

Both return ``Result`` values; remote failures and denials never raise.

Realtime change notifications (``db-event``) are applied to cached entries
through ``apply_change``: UPDATE rewrites the matching record in place, DELETE
removes it, anything else invalidates the resource. Every change also
drops the resources registered as related to the table.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from freshline.access.policy import PolicyEvaluator, Principal
from freshline.core.cache import TTLCache
from freshline.core.metrics import REMOTE_REQUESTS_TOTAL
from freshline.core.result import (
    AccessDenied,
    Failure,
    RemoteError,
    Result,
    Success,
    ValidationError,
)
from freshline.data.keys import normalize_filters, resource_key, resource_name, resource_prefix
from freshline.data.remote import RemoteStore, RemoteStoreError
from freshline.realtime.connection import ConnectionManager
from freshline.realtime.messages import InboundMessage, thaw

logger = logging.getLogger(__name__)

_LOCKS_MAX = 1024

PATCHED = "patched"
INVALIDATED = "invalidated"
IGNORED = "ignored"


class _Unpatchable(Exception):
    pass


class DataAccessFacade:
    def __init__(
        self,
        remote: RemoteStore,
        *,
        principal: Optional[Principal] = None,
        cache: Optional[TTLCache] = None,
        evaluator: Optional[PolicyEvaluator] = None,
        default_ttl: float = 30.0,
        ttl_overrides: Optional[Mapping[str, float]] = None,
        single_flight: bool = True,
        stale_on_error: bool = False,
        related: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> None:
        if default_ttl < 0:
            raise ValueError("default_ttl must be >= 0")
        self.remote = remote
        self.principal = principal
        self.cache: TTLCache = cache if cache is not None else TTLCache(default_ttl=default_ttl)
        self.evaluator = evaluator or PolicyEvaluator()
        self.default_ttl = float(default_ttl)
        self.ttl_overrides: Dict[str, float] = dict(ttl_overrides or {})
        self.single_flight = single_flight
        self.stale_on_error = stale_on_error
        self._locks: Dict[str, asyncio.Lock] = {}
        # One level only: ``calls -> analytics`` does not follow ``analytics -> ...``.
        self.related: Dict[str, Tuple[str, ...]] = {
            resource_name(base): tuple(resource_name(name) for name in names)
            for base, names in (related or {}).items()
        }

    def ttl_for(self, resource: str, ttl: Optional[float] = None) -> float:
        if ttl is not None:
            return float(ttl)
        return float(self.ttl_overrides.get(resource, self.default_ttl))

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is not None:
            return lock
        # Unbounded filter variety must not grow the lock table forever.
        if len(self._locks) >= _LOCKS_MAX:
            for stale_key in [k for k, v in self._locks.items() if not v.locked()]:
                self._locks.pop(stale_key, None)
        lock = asyncio.Lock()
        self._locks[key] = lock
        return lock

    def _prepare(
        self,
        resource: str,
        action: str,
        principal: Optional[Principal],
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Result[Tuple[str, str], Any]:
        """``(resource name, cache key)``; policy and cache see the same name."""

        principal = principal or self.principal
        if principal is None:
            return Failure(ValidationError("principal", "A principal is required"))
        try:
            name = resource_name(resource)
            key = resource_key(name, principal=principal, filters=filters)
        except ValueError as exc:
            return Failure(ValidationError("resource", str(exc), value=str(resource)))
        if not self.evaluator.can_access(principal.role, name, action):
            return Failure(AccessDenied(principal.role, name, action))
        return Success((name, key.value))

    # Reads ---------------------------------------------------------------

    async def get(
        self,
        resource: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        principal: Optional[Principal] = None,
        ttl: Optional[float] = None,
        force_refresh: bool = False,
    ) -> Result[Any, Any]:
        """Return the resource, from cache while fresh; denial and remote failure are ``Failure``."""

        prepared = self._prepare(resource, "read", principal, filters)
        if isinstance(prepared, Failure):
            return prepared
        resource, key = prepared.value

        if not force_refresh:
            entry = self.cache.lookup(key)
            if entry is not None:
                return Success(entry.value)

        if not self.single_flight:
            return await self._fetch(resource, filters, key, ttl)

        async with self._lock_for(key):
            # Whoever held the lock before us may have populated the entry.
            if not force_refresh:
                entry = self.cache.lookup(key)
                if entry is not None:
                    return Success(entry.value)
            return await self._fetch(resource, filters, key, ttl)

    async def _fetch(
        self,
        resource: str,
        filters: Optional[Mapping[str, Any]],
        key: str,
        ttl: Optional[float],
    ) -> Result[Any, Any]:
        try:
            value = await self.remote.fetch(resource, normalize_filters(filters))
        except Exception as exc:
            status = exc.status if isinstance(exc, RemoteStoreError) else None
            if not isinstance(exc, RemoteStoreError):
                logger.exception("facade.fetch_crashed", extra={"resource": resource})
            if self.stale_on_error:
                stale = self.cache.peek_stale(key)
                if stale is not None:
                    REMOTE_REQUESTS_TOTAL.labels(operation="fetch", outcome="stale").inc()
                    logger.warning(
                        "facade.serving_stale",
                        extra={"resource": resource, "error": str(exc)},
                    )
                    return Success(stale.value)
            REMOTE_REQUESTS_TOTAL.labels(operation="fetch", outcome="error").inc()
            logger.warning(
                "facade.fetch_failed",
                extra={"resource": resource, "status": status, "error": str(exc)},
            )
            return Failure(RemoteError(resource, "fetch", str(exc) or exc.__class__.__name__, status))

        REMOTE_REQUESTS_TOTAL.labels(operation="fetch", outcome="success").inc()
        self.cache.set(key, value, ttl=self.ttl_for(resource, ttl))
        return Success(value)

    # Writes --------------------------------------------------------------

    async def mutate(
        self,
        resource: str,
        patch: Mapping[str, Any],
        *,
        principal: Optional[Principal] = None,
        action: str = "update",
    ) -> Result[Any, Any]:
        prepared = self._prepare(resource, action, principal)
        if isinstance(prepared, Failure):
            return prepared
        resource = prepared.value[0]
        if not isinstance(patch, Mapping):
            return Failure(ValidationError("patch", "Patch must be a mapping", value=type(patch).__name__))

        try:
            result = await self.remote.mutate(resource, patch)
        except Exception as exc:
            status = exc.status if isinstance(exc, RemoteStoreError) else None
            if not isinstance(exc, RemoteStoreError):
                logger.exception("facade.mutate_crashed", extra={"resource": resource})
            REMOTE_REQUESTS_TOTAL.labels(operation="mutate", outcome="error").inc()
            logger.warning(
                "facade.mutate_failed",
                extra={"resource": resource, "status": status, "error": str(exc)},
            )
            return Failure(RemoteError(resource, "mutate", str(exc) or exc.__class__.__name__, status))

        REMOTE_REQUESTS_TOTAL.labels(operation="mutate", outcome="success").inc()
        self.invalidate(resource)
        return Success(result)

    def invalidate(
        self,
        resource: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        principal: Optional[Principal] = None,
    ) -> int:
        """Drop one cached variant, or every variant when neither filters nor principal is given.

        Related resources are always dropped whole. Returns the number of
        entries removed.
        """

        if filters is None and principal is None:
            count = self.cache.invalidate_prefix(resource_prefix(resource))
        else:
            principal = principal or self.principal
            key = resource_key(resource, principal=principal, filters=filters).value
            count = 1 if key in self.cache else 0
            self.cache.invalidate(key)
        count += self._invalidate_related(resource)
        logger.debug("facade.invalidated", extra={"resource": resource, "count": count})
        return count

    def _invalidate_related(self, resource: str) -> int:
        count = 0
        for name in self.related.get(resource_name(resource), ()):
            count += self.cache.invalidate_prefix(resource_prefix(name))
        return count

    # Change notifications ------------------------------------------------

    def apply_change(self, change: Mapping[str, Any]) -> str:
        """Reflect one ``{table, eventType, new, old}`` change in the cache."""

        change = thaw(change)
        table = change.get("table")
        if not isinstance(table, str) or not table.strip():
            logger.debug("facade.change_ignored", extra={"reason": "no table"})
            return IGNORED
        try:
            prefix = resource_prefix(table)
        except ValueError:
            logger.debug("facade.change_ignored", extra={"reason": "bad table"})
            return IGNORED

        event_type = str(change.get("eventType") or "").upper()
        record = change.get("new") if event_type == "UPDATE" else change.get("old")
        if event_type == "DELETE" and not isinstance(record, Mapping):
            record = change.get("new")
        record_id = record.get("id") if isinstance(record, Mapping) else None

        self._invalidate_related(table)
        if event_type not in ("UPDATE", "DELETE") or record_id is None:
            self.cache.invalidate_prefix(prefix)
            logger.debug("facade.change_invalidated", extra={"table": table, "event": event_type})
            return INVALIDATED

        def rewrite(value: Any) -> Any:
            if isinstance(value, list):
                rows: List[Any] = []
                for item in value:
                    if isinstance(item, Mapping) and item.get("id") == record_id:
                        if event_type == "UPDATE":
                            rows.append({**item, **record})
                        continue
                    rows.append(item)
                return rows
            if isinstance(value, Mapping) and value.get("id") == record_id:
                if event_type == "UPDATE":
                    return {**value, **record}
                raise _Unpatchable()
            return value

        for key in self.cache.keys(prefix):
            try:
                self.cache.patch(key, rewrite)
            except _Unpatchable:
                self.cache.invalidate(key)
        logger.debug(
            "facade.change_patched",
            extra={"table": table, "event": event_type},
        )
        return PATCHED

    async def _on_change(self, message: InboundMessage) -> None:
        # Cached values are mutable copies; the received payload is read-only.
        data = thaw(message.data)
        if not isinstance(data, Mapping):
            logger.debug("facade.change_ignored", extra={"reason": "no payload"})
            return
        self.apply_change(data)

    def attach(self, manager: ConnectionManager, message_type: str = "db-event") -> None:
        """Apply ``message_type`` change notifications from ``manager`` to the cache."""

        manager.register(message_type, self._on_change)


__all__ = ["DataAccessFacade", "INVALIDATED", "IGNORED", "PATCHED"]
