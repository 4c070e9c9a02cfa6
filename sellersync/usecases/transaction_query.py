from __future__ import annotations

import logging
from typing import Callable

from sellersync.common.run_id import generate_run_id
from sellersync.domain.exceptions import ConnectivityLost, ValidationError
from sellersync.domain.models import PageResult, TransactionFilters, TransactionRecord, compute_total_pages
from sellersync.domain.ports.remote import TransactionRemoteProtocol
from sellersync.domain.transactions.resolution import DirectLookup, ScanFallback, TransactionResolver
from sellersync.infra.cache.keys import TRANSACTION_DETAILS, TRANSACTION_LISTS, TRANSACTIONS, make_key
from sellersync.infra.cache.query_cache import QueryCache, QueryOptions
from sellersync.infra.logging.setup import getLibraryLogger, logEvent
from sellersync.usecases.observers import QueryObserver, QueryState


class TransactionQueryEngine:
    """
    Назначение/ответственность:
        Постраничные отфильтрованные списки транзакций и разрешение одной
        транзакции по id поверх QueryCache.
    Взаимодействия:
        - TransactionRemoteProtocol для чтения.
        - TransactionResolver (DirectLookup -> ScanFallback) для resolve_by_id.
    """

    def __init__(
        self,
        remote: TransactionRemoteProtocol,
        cache: QueryCache,
        logger: logging.Logger | None = None,
        run_id: str | None = None,
        list_stale_seconds: float = 120.0,
        detail_stale_seconds: float = 300.0,
        default_limit: int = 20,
        scan_page_size: int = 100,
        scan_max_pages: int = 10,
        remember_direct_lookup_support: bool = False,
    ):
        self.remote = remote
        self.cache = cache
        self.logger = logger or getLibraryLogger()
        self.run_id = run_id or generate_run_id()
        self.list_stale_seconds = list_stale_seconds
        self.detail_stale_seconds = detail_stale_seconds
        self.default_limit = default_limit
        self.resolver = TransactionResolver(
            DirectLookup(remote, self.logger, self.run_id),
            ScanFallback(remote, page_size=scan_page_size, max_pages=scan_max_pages),
            remember_direct_lookup_support=remember_direct_lookup_support,
        )

    def page_key(self, filters: TransactionFilters | None, page: int, limit: int) -> tuple:
        params = dict((filters or TransactionFilters()).as_params())
        params["page"] = page
        params["limit"] = limit
        return make_key(*TRANSACTION_LISTS, params=params)

    def page_options(self, filters: TransactionFilters | None, page: int, limit: int) -> QueryOptions:
        filters = filters or TransactionFilters()

        async def load() -> PageResult[TransactionRecord]:
            result = await self.remote.list_transactions(filters, page, limit)
            return self._normalize_page(result, filters, page, limit)

        return QueryOptions(
            fetcher=load,
            stale_seconds=self.list_stale_seconds,
            degrade_on=(ConnectivityLost,),
            fallback=lambda: PageResult.empty(page, limit),
        )

    async def fetch_page(
        self,
        filters: TransactionFilters | None = None,
        page: int = 1,
        limit: int | None = None,
        *,
        force: bool = False,
    ) -> PageResult[TransactionRecord]:
        """
        Назначение:
            Страница транзакций, удовлетворяющих всем заданным фильтрам.

        Контракт:
            - Страница за пределами total_pages возвращает records=[] с
              неизменными page/limit/total/total_pages, без ошибки.
            - При потере связи возвращается пустая страница.

        Ошибки/исключения:
            ValidationError для page < 1 или limit < 1.
        """
        limit = self.default_limit if limit is None else limit
        if page < 1 or limit < 1:
            raise ValidationError(
                f"Invalid pagination page={page} limit={limit}",
                details={"page": page, "limit": limit},
            )
        key = self.page_key(filters, page, limit)
        return await self.cache.fetch(key, self.page_options(filters, page, limit), force=force)

    def observe_page(
        self,
        filters: TransactionFilters | None = None,
        page: int = 1,
        limit: int | None = None,
        on_change: Callable[[QueryState[PageResult[TransactionRecord]]], None] | None = None,
    ) -> QueryObserver[PageResult[TransactionRecord]]:
        limit = self.default_limit if limit is None else limit
        return QueryObserver(
            self.cache,
            self.page_key(filters, page, limit),
            self.page_options(filters, page, limit),
            on_change=on_change,
        )

    async def resolve_by_id(self, transaction_id: str, *, force: bool = False) -> TransactionRecord:
        """
        Назначение:
            Найти одну транзакцию по id даже без прямого эндпоинта.

        Алгоритм:
            - Уровень 1 (DirectLookup): отказ не фатален.
            - Уровень 2 (ScanFallback): страницы по 100, максимум 10.
            - Найденная запись кэшируется по ключу transactions/detail/<id>.

        Ошибки/исключения:
            NotFound: только если запись не нашли оба уровня.
        """
        if not transaction_id:
            raise ValidationError("transaction_id is required")

        async def load() -> TransactionRecord:
            resolution = await self.resolver.resolve(transaction_id)
            logEvent(
                self.logger,
                logging.INFO,
                self.run_id,
                "transactions",
                f"resolved id={transaction_id} tier={resolution.tier} pages_scanned={resolution.pages_scanned}",
            )
            return resolution.record

        key = make_key(*TRANSACTION_DETAILS, transaction_id)
        options = QueryOptions(fetcher=load, stale_seconds=self.detail_stale_seconds)
        return await self.cache.fetch(key, options, force=force)

    def invalidate(self) -> list:
        return self.cache.invalidate(TRANSACTIONS)

    def _normalize_page(
        self,
        result: PageResult[TransactionRecord],
        filters: TransactionFilters,
        page: int,
        limit: int,
    ) -> PageResult[TransactionRecord]:
        records = [r for r in result.records if filters.matches(r)]
        dropped = len(result.records) - len(records)
        limit = result.limit or limit
        total = result.total
        total_pages = result.total_pages
        if dropped:
            logEvent(
                self.logger,
                logging.WARNING,
                self.run_id,
                "transactions",
                f"server returned {dropped} records outside filters {filters.as_params()}",
            )
            # total сервера посчитан без фильтров; отброшенные записи из него вычитаются
            total = max(len(records), total - dropped)
            total_pages = compute_total_pages(total, limit)
        normalized = PageResult.build(
            records,
            page=result.page or page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            skipped=result.skipped,
        )
        if normalized.page > normalized.total_pages and normalized.records:
            normalized = normalized.with_records(())
        return normalized


__all__ = ["TransactionQueryEngine"]
