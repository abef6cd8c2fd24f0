"""Search-as-you-type on top of the debouncer and a TTL cache."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

from freshline.access.policy import Principal
from freshline.core.cache import TTLCache
from freshline.core.result import Failure, Success
from freshline.core.settings import Settings, get_settings
from freshline.data.facade import DataAccessFacade
from freshline.data.keys import VERSION, search_key
from freshline.shaping.debounce import Debouncer

logger = logging.getLogger(__name__)

SearchFunc = Callable[[str], Awaitable[Any]]
ResultsCallback = Callable[[str, List[Any]], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Any], Union[None, Awaitable[None]]]


def normalize_query(query: str) -> str:
    return " ".join((query or "").split())


class SearchSession:
    """Debounced query -> cached results.

    ``search`` may return a plain sequence or a ``Result``; a ``Failure`` (or
    an exception) yields no results and is reported through ``on_error``.
    Results of a query that was superseded while in flight are discarded.
    """

    def __init__(
        self,
        search: SearchFunc,
        *,
        on_results: Optional[ResultsCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        delay: float = 0.3,
        min_query_length: int = 2,
        cache_ttl: float = 120.0,
        cache: Optional[TTLCache] = None,
        scope: str = "anon",
    ) -> None:
        self._search = search
        self.on_results = on_results
        self.on_error = on_error
        self.min_query_length = int(min_query_length)
        self.cache_ttl = float(cache_ttl)
        self.cache: TTLCache = cache if cache is not None else TTLCache(default_ttl=cache_ttl)
        self.scope = scope
        self._debouncer: Debouncer[str] = Debouncer(self._emit, delay, name="search")
        self._generation = 0
        self.last_query: Optional[str] = None
        self.results: List[Any] = []

    @classmethod
    def for_resource(
        cls,
        facade: DataAccessFacade,
        resource: str,
        *,
        param: str = "search",
        filters: Optional[Mapping[str, Any]] = None,
        principal: Optional[Principal] = None,
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ) -> "SearchSession":
        """Search ``resource`` through the facade (policy, remote errors and all)."""

        settings = settings or get_settings()
        principal = principal or facade.principal
        base_filters = dict(filters or {})

        async def search(query: str) -> Any:
            return await facade.get(
                resource,
                {**base_filters, param: query},
                principal=principal,
                ttl=0,
            )

        kwargs.setdefault("delay", settings.search_debounce_seconds)
        kwargs.setdefault("min_query_length", settings.search_min_query_length)
        kwargs.setdefault("cache_ttl", settings.search_cache_ttl_seconds)
        kwargs.setdefault("scope", f"{resource}:{principal.scope if principal else 'anon'}")
        return cls(search, **kwargs)

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    def set_query(self, query: str) -> None:
        """Feed one keystroke's worth of query text."""

        self._debouncer.push(query)

    async def _emit(self, query: str) -> None:
        self._generation += 1
        generation = self._generation
        results = await self.run(query)
        if generation != self._generation:
            logger.debug("search.superseded", extra={"scope": self.scope})
            return
        normalized = normalize_query(query)
        self.last_query = normalized
        self.results = results
        await self._invoke(self.on_results, normalized, results)

    async def run(self, query: str) -> List[Any]:
        """Resolve ``query`` immediately (no debounce), using the cache when fresh."""

        normalized = normalize_query(query)
        if len(normalized) < self.min_query_length:
            return []
        key = search_key(scope=self.scope, query=normalized).value
        entry = self.cache.lookup(key)
        if entry is not None:
            return entry.value

        try:
            outcome = await self._search(normalized)
        except Exception as exc:
            logger.exception("search.failed", extra={"scope": self.scope})
            await self._invoke(self.on_error, exc)
            return []
        if isinstance(outcome, Failure):
            logger.warning(
                "search.failed",
                extra={"scope": self.scope, "error": str(outcome.error)},
            )
            await self._invoke(self.on_error, outcome.error)
            return []
        if isinstance(outcome, Success):
            outcome = outcome.value
        results = list(outcome or [])
        self.cache.set(key, results, ttl=self.cache_ttl)
        return results

    def clear_cache(self) -> None:
        self.cache.invalidate_prefix(f"search:{VERSION}:{self.scope}:")

    def close(self) -> None:
        self._debouncer.cancel()

    async def _invoke(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("search.callback_failed", extra={"scope": self.scope})


__all__ = ["SearchSession", "normalize_query"]
