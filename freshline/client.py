"""Composition root: one object wiring settings, cache, policy, realtime and data access."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from freshline.access.policy import DEFAULT_POLICY, Policy, PolicyEvaluator, Principal
from freshline.core.cache import TTLCache
from freshline.core.logging import configure_logging
from freshline.core.settings import Settings, get_settings, resolve_api_base_url
from freshline.data.facade import DataAccessFacade
from freshline.data.remote import HttpRemoteStore, RemoteStore
from freshline.data.search import SearchSession
from freshline.realtime.connection import ConnectionManager
from freshline.realtime.notifications import LoggingNotifier, NotificationRouter, Notifier
from freshline.realtime.transport import Connector

logger = logging.getLogger(__name__)


class FreshlineClient:
    """
    Usage:
        async with FreshlineClient.from_settings(principal=Principal("agent", "42")) as client:
            result = await client.data.get("clients")
    """

    def __init__(
        self,
        *,
        connection: ConnectionManager,
        data: DataAccessFacade,
        notifications: NotificationRouter,
        settings: Optional[Settings] = None,
        change_message_type: str = "db-event",
    ) -> None:
        self.settings = settings or get_settings()
        self.connection = connection
        self.data = data
        self.notifications = notifications
        self.change_message_type = change_message_type
        self._searches: list[SearchSession] = []
        self._owns_remote = False
        self._wired = False
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        principal: Optional[Principal] = None,
        policy: Policy = DEFAULT_POLICY,
        notifier: Optional[Notifier] = None,
        remote: Optional[RemoteStore] = None,
        connector: Optional[Connector] = None,
        ws_url: Optional[str] = None,
        api_base_url: Optional[str] = None,
        single_flight: bool = True,
        stale_on_error: bool = False,
        related: Optional[Mapping[str, Iterable[str]]] = None,
        configure_logs: bool = True,
    ) -> "FreshlineClient":
        settings = settings or get_settings()
        if configure_logs:
            configure_logging(settings)

        cache: TTLCache = TTLCache(
            default_ttl=settings.cache_ttl_seconds,
            max_items=settings.cache_max_items,
        )
        owns_remote = remote is None
        if owns_remote:
            remote = HttpRemoteStore(
                resolve_api_base_url(settings, api_base_url),
                timeout=settings.api_timeout_seconds,
            )
        data = DataAccessFacade(
            remote,
            principal=principal,
            cache=cache,
            evaluator=PolicyEvaluator(policy),
            default_ttl=settings.cache_ttl_seconds,
            single_flight=single_flight,
            stale_on_error=stale_on_error,
            related=related,
        )
        connection = ConnectionManager.from_settings(settings, url=ws_url, connector=connector)
        client = cls(
            connection=connection,
            data=data,
            notifications=NotificationRouter(notifier or LoggingNotifier()),
            settings=settings,
        )
        client._owns_remote = owns_remote
        return client

    def search(self, resource: str, **kwargs: Any) -> SearchSession:
        """Debounced search over ``resource``; closed together with the client."""

        session = SearchSession.for_resource(self.data, resource, settings=self.settings, **kwargs)
        self._searches.append(session)
        return session

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if not self._wired:
            self.notifications.install(self.connection)
            self.data.attach(self.connection, self.change_message_type)
            self._wired = True
        await self.connection.connect()
        logger.info("client.started", extra={"url": self.connection.url})

    async def close(self) -> None:
        for session in self._searches:
            session.close()
        self._searches.clear()
        await self.connection.close()
        close = getattr(self.data.remote, "close", None)
        if self._owns_remote and close is not None:
            await close()
        self._started = False
        logger.info("client.closed")

    async def __aenter__(self) -> "FreshlineClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = ["FreshlineClient"]
