from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from sellersync.common.run_id import generate_run_id
from sellersync.config import Settings
from sellersync.domain.ports.remote import RemoteResourceClientProtocol
from sellersync.infra.cache.query_cache import QueryCache
from sellersync.infra.http.remote_client import HttpRemoteResourceClient
from sellersync.infra.http.seller_client import SellerApiClient
from sellersync.infra.logging.setup import getLibraryLogger, logEvent
from sellersync.usecases.notification_sync import NotificationSyncEngine
from sellersync.usecases.transaction_query import TransactionQueryEngine
from sellersync.usecases.unread_poller import UnreadAggregatePoller


class SyncSession:
    """
    Назначение/ответственность:
        Корень композиции: один QueryCache на сессию, общий для обоих движков.
    Жизненный цикл:
        Создаётся при старте приложения (после логина), close() вызывается
        при logout: кэш очищается, HTTP-клиент закрывается.
    """

    def __init__(
        self,
        settings: Settings,
        remote: RemoteResourceClientProtocol,
        logger: logging.Logger | None = None,
        run_id: str | None = None,
        api_client: SellerApiClient | None = None,
    ):
        self.settings = settings
        self.remote = remote
        self.logger = logger or getLibraryLogger()
        self.run_id = run_id or generate_run_id()
        self.api_client = api_client
        self.cache = QueryCache(logger=self.logger, run_id=self.run_id)
        self.notifications = NotificationSyncEngine(
            remote,
            self.cache,
            logger=self.logger,
            run_id=self.run_id,
            list_stale_seconds=settings.notifications_stale_seconds,
            default_limit=settings.notifications_page_limit,
        )
        self.transactions = TransactionQueryEngine(
            remote,
            self.cache,
            logger=self.logger,
            run_id=self.run_id,
            list_stale_seconds=settings.transactions_stale_seconds,
            detail_stale_seconds=settings.transaction_detail_stale_seconds,
            default_limit=settings.transactions_page_limit,
            scan_page_size=settings.scan_page_size,
            scan_max_pages=settings.scan_max_pages,
            remember_direct_lookup_support=settings.remember_direct_lookup_support,
        )
        self._pollers: list[UnreadAggregatePoller] = []
        self.closed = False

    def unread_poller(self, on_change=None) -> UnreadAggregatePoller:
        poller = UnreadAggregatePoller(
            self.notifications,
            interval_seconds=self.settings.unread_refresh_seconds,
            on_change=on_change,
        )
        self._pollers.append(poller)
        return poller

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for poller in self._pollers:
            await poller.aclose()
        self._pollers.clear()
        await self.cache.close()
        if self.api_client is not None:
            await self.api_client.aclose()
        logEvent(self.logger, logging.INFO, self.run_id, "core", "session closed")


def build_api_client(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> SellerApiClient:
    if not settings.base_url:
        raise ValueError("base_url is required")
    return SellerApiClient(
        baseUrl=settings.base_url,
        token=settings.api_token,
        timeoutSeconds=settings.timeout_seconds,
        tlsSkipVerify=settings.tls_skip_verify,
        caFile=settings.ca_file,
        retries=settings.retries,
        retryBackoffSeconds=settings.retry_backoff_seconds,
        transport=transport,
    )


@asynccontextmanager
async def open_session(
    settings: Settings,
    logger: logging.Logger | None = None,
    run_id: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[SyncSession]:
    logger = logger or getLibraryLogger()
    run_id = run_id or generate_run_id()
    api_client = build_api_client(settings, transport=transport)
    session = SyncSession(
        settings,
        HttpRemoteResourceClient(api_client, logger=logger, run_id=run_id),
        logger=logger,
        run_id=run_id,
        api_client=api_client,
    )
    try:
        yield session
    finally:
        await session.close()


__all__ = ["SyncSession", "build_api_client", "open_session"]
