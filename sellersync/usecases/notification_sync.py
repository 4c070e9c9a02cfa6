from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from sellersync.common.run_id import generate_run_id
from sellersync.common.time import utc_now
from sellersync.domain.exceptions import ConnectivityLost
from sellersync.domain.models import (
    Ack,
    NotificationFilters,
    NotificationRecord,
    PageResult,
    Pagination,
    UnreadAggregate,
)
from sellersync.domain.notifications.optimistic import (
    Delete,
    MarkAllRead,
    MarkRead,
    NotificationOperation,
    NotificationSnapshot,
    apply_optimistic_change,
)
from sellersync.domain.ports.remote import NotificationRemoteProtocol
from sellersync.infra.cache.keys import NOTIFICATION_LISTS, NOTIFICATIONS, UNREAD_AGGREGATE, make_key
from sellersync.infra.cache.query_cache import QueryCache, QueryOptions
from sellersync.infra.logging.setup import getLibraryLogger, logEvent
from sellersync.usecases.observers import MutationState, QueryObserver, QueryState


class NotificationSyncEngine:
    """
    Назначение/ответственность:
        Списки уведомлений, счётчик непрочитанных и три оптимистичные мутации
        (mark_read, mark_all_read, delete) поверх QueryCache.

    Протокол мутации:
        1. Оптимистичное применение: списки и счётчик меняются одним
           синхронным шагом (apply_optimistic_change + QueryCache.set_many)
           ещё до сетевого вызова.
        2. Удалённый вызов.
        3. Успех: записи инвалидируются, активные перезагружаются в фоне,
           чтобы расхождение с сервером (например, действие из другой
           сессии) исправилось само.
        4. Отказ: точный откат не вычисляется. Записи инвалидируются и
           принудительно перезагружаются с сервера, ошибка пробрасывается
           вызывающему. Откат пары «список + счётчик» при конкурентных
           мутациях легко сделать неверно, refetch всегда восстанавливает
           состояние сервера.

    Ограничения:
        Пока удалённый вызов мутации в полёте, кэш удерживает префикс
        notifications: любые ответы загрузок за это время отбрасываются.
    """

    def __init__(
        self,
        remote: NotificationRemoteProtocol,
        cache: QueryCache,
        logger: logging.Logger | None = None,
        run_id: str | None = None,
        list_stale_seconds: float = 30.0,
        unread_stale_seconds: float = 0.0,
        default_limit: int = 50,
        clock: Callable[[], Any] = utc_now,
    ):
        self.remote = remote
        self.cache = cache
        self.logger = logger or getLibraryLogger()
        self.run_id = run_id or generate_run_id()
        self.list_stale_seconds = list_stale_seconds
        self.unread_stale_seconds = unread_stale_seconds
        self.default_limit = default_limit
        self._clock = clock

        self.mark_read_state = MutationState("mark_read")
        self.mark_all_read_state = MutationState("mark_all_read")
        self.delete_state = MutationState("delete")

    # ---- чтение ----

    def list_key(self, filters: NotificationFilters | None = None, pagination: Pagination | None = None) -> tuple:
        filters = filters or NotificationFilters()
        pagination = pagination or Pagination(limit=self.default_limit)
        params = dict(filters.as_params())
        params["page"] = pagination.page
        params["limit"] = pagination.limit
        return make_key(*NOTIFICATION_LISTS, params=params)

    def list_options(self, filters: NotificationFilters | None = None, pagination: Pagination | None = None) -> QueryOptions:
        filters = filters or NotificationFilters()
        pagination = pagination or Pagination(limit=self.default_limit)

        async def load() -> PageResult[NotificationRecord]:
            return await self.remote.list_notifications(filters, pagination)

        return QueryOptions(
            fetcher=load,
            stale_seconds=self.list_stale_seconds,
            degrade_on=(ConnectivityLost,),
            fallback=lambda: PageResult.empty(pagination.page, pagination.limit),
        )

    def unread_options(self) -> QueryOptions:
        return QueryOptions(
            fetcher=self.remote.get_unread_aggregate,
            stale_seconds=self.unread_stale_seconds,
            degrade_on=(ConnectivityLost,),
            fallback=lambda: UnreadAggregate(0),
        )

    async def fetch_list(
        self,
        filters: NotificationFilters | None = None,
        pagination: Pagination | None = None,
        *,
        force: bool = False,
    ) -> PageResult[NotificationRecord]:
        """
        Назначение:
            Страница уведомлений с учётом фильтров (read, kind).

        Ошибки/исключения:
            ConnectivityLost не пробрасывается: возвращается пустая страница,
            которая кэшируется как устаревшая. Прочие отказы пробрасываются.
        """
        key = self.list_key(filters, pagination)
        return await self.cache.fetch(key, self.list_options(filters, pagination), force=force)

    async def fetch_unread_aggregate(self, *, force: bool = False) -> UnreadAggregate:
        """
        Назначение:
            Текущий счётчик непрочитанных.

        Ошибки/исключения:
            При потере связи возвращает UnreadAggregate(0) и ничего не
            пробрасывает: бейдж со значением 0 лучше, чем необработанная
            ошибка в слое представления.
        """
        return await self.cache.fetch(UNREAD_AGGREGATE, self.unread_options(), force=force)

    def cached_unread(self) -> UnreadAggregate | None:
        return self.cache.get(UNREAD_AGGREGATE, revalidate=False)

    def observe_list(
        self,
        filters: NotificationFilters | None = None,
        pagination: Pagination | None = None,
        on_change: Callable[[QueryState[PageResult[NotificationRecord]]], None] | None = None,
    ) -> QueryObserver[PageResult[NotificationRecord]]:
        return QueryObserver(
            self.cache,
            self.list_key(filters, pagination),
            self.list_options(filters, pagination),
            on_change=on_change,
        )

    def observe_unread(
        self,
        on_change: Callable[[QueryState[UnreadAggregate]], None] | None = None,
    ) -> QueryObserver[UnreadAggregate]:
        return QueryObserver(self.cache, UNREAD_AGGREGATE, self.unread_options(), on_change=on_change)

    # ---- мутации ----

    async def mark_read(self, notification_id: str) -> Ack:
        """
        Пометить уведомление прочитанным.
        Если локально оно уже прочитано, счётчик не меняется, но удалённый
        вызов всё равно выполняется (он идемпотентен).
        """
        return await self._mutate(
            self.mark_read_state,
            MarkRead(notification_id=notification_id, at=self._clock()),
            lambda: self.remote.mark_notification_read(notification_id),
        )

    async def mark_all_read(self) -> Ack:
        """Счётчик становится ровно 0, удалённый вызов выполняется всегда."""
        return await self._mutate(
            self.mark_all_read_state,
            MarkAllRead(at=self._clock()),
            self.remote.mark_all_notifications_read,
        )

    async def delete(self, notification_id: str) -> Ack:
        """Счётчик уменьшается, только если удаляемое уведомление было непрочитанным."""
        return await self._mutate(
            self.delete_state,
            Delete(notification_id=notification_id),
            lambda: self.remote.delete_notification(notification_id),
        )

    def snapshot(self) -> NotificationSnapshot:
        lists = {}
        for key in self.cache.keys_matching(NOTIFICATION_LISTS):
            page = self.cache.get(key, revalidate=False)
            if page is not None:
                lists[key] = page
        return NotificationSnapshot(lists=lists, unread=self.cached_unread())

    def apply_optimistic(self, operation: NotificationOperation) -> NotificationSnapshot:
        """
        Назначение:
            Шаг 1 протокола: вычислить новое состояние и записать изменённые
            записи кэша одним вызовом set_many.
        """
        before = self.snapshot()
        after = apply_optimistic_change(before, operation)
        updates = {key: page for key, page in after.lists.items() if page is not before.lists.get(key)}
        if after.unread is not None and after.unread != before.unread:
            updates[UNREAD_AGGREGATE] = after.unread
        if updates:
            self.cache.set_many(updates)
        return after

    async def _mutate(
        self,
        state: MutationState,
        operation: NotificationOperation,
        call: Callable[[], Awaitable[Ack]],
    ) -> Ack:
        state.begin()
        hold = self.cache.hold(NOTIFICATIONS)
        after = self.apply_optimistic(operation)
        logEvent(
            self.logger,
            logging.DEBUG,
            self.run_id,
            "notifications",
            f"{state.name} optimistic applied unread={after.unread.count if after.unread else None}",
        )
        try:
            try:
                ack = await call()
            finally:
                hold.release()
        except Exception as exc:
            self.cache.invalidate(NOTIFICATIONS, refetch="all")
            state.fail(exc)
            logEvent(
                self.logger,
                logging.ERROR,
                self.run_id,
                "notifications",
                f"{state.name} failed, cache invalidated for refetch: {exc}",
            )
            raise

        self.cache.invalidate(NOTIFICATIONS, refetch="active")
        state.succeed(ack)
        logEvent(self.logger, logging.INFO, self.run_id, "notifications", f"{state.name} confirmed")
        return ack


__all__ = ["NotificationSyncEngine"]
