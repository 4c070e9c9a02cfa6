from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Mapping

from sellersync.common.run_id import generate_run_id
from sellersync.infra.cache.keys import QueryKey, key_matches
from sellersync.infra.logging.setup import getLibraryLogger, logEvent

Listener = Callable[["CacheEntry"], None]
RefetchMode = Literal["active", "all", "none"]


@dataclass(frozen=True)
class QueryOptions:
    """
    Назначение:
        Как загружать и сколько считать свежей запись кэша.

    Контракт:
        - fetcher: корутина без аргументов, возвращающая значение записи.
        - stale_seconds: возраст, после которого запись считается устаревшей
          (0: всегда устаревшая, каждое чтение через fetch идёт в сеть).
        - degrade_on/fallback: отказы из degrade_on не пробрасываются, вместо
          значения сохраняется fallback(); запись остаётся устаревшей.
    """

    fetcher: Callable[[], Awaitable[Any]]
    stale_seconds: float = 0.0
    degrade_on: tuple[type[BaseException], ...] = ()
    fallback: Callable[[], Any] | None = None


@dataclass(eq=False)
class CacheEntry:
    """
    Назначение/ответственность:
        Состояние одного запроса в кэше.
    Инварианты/гарантии:
        - version увеличивается при каждой записи значения и каждой инвалидации.
        - Изменяется только QueryCache.
    """

    key: QueryKey
    value: Any = None
    has_value: bool = False
    fetched_at: float | None = None
    updated_at: float | None = None
    is_stale: bool = True
    is_fetching: bool = False
    error: BaseException | None = None
    version: int = 0
    options: QueryOptions | None = None
    listeners: list[Listener] = field(default_factory=list)
    in_flight: asyncio.Task | None = None
    in_flight_version: int = -1


class Subscription:
    def __init__(self, cache: "QueryCache", key: QueryKey, listener: Listener):
        self._cache = cache
        self.key = key
        self._listener = listener
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._cache._remove_listener(self.key, self._listener)


class MutationHold:
    """
    Назначение:
        Пока удержание активно, результаты загрузок для ключей с данным
        префиксом не записываются в кэш (локальное оптимистичное состояние
        свежее любого ответа, полученного в это время).
    """

    def __init__(self, cache: "QueryCache", prefix: QueryKey):
        self._cache = cache
        self.prefix = prefix
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._cache._release_hold(self.prefix)

    def __enter__(self) -> "MutationHold":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class QueryCache:
    """
    Назначение/ответственность:
        Общий in-memory кэш запросов (stale-while-revalidate) с подписками.

    Ограничения:
        - Все чтения/записи синхронны; асинхронны только загрузки (fetcher).
        - Один event loop, без блокировок: атомарность многоключевых записей
          обеспечивается тем, что они выполняются в одном синхронном шаге.

    Взаимодействия:
        Создаётся SyncSession и внедряется в NotificationSyncEngine и
        TransactionQueryEngine; очищается при завершении сессии.
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        run_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logger or getLibraryLogger()
        self.run_id = run_id or generate_run_id()
        self._clock = clock
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._holds: dict[QueryKey, int] = {}
        self._tasks: set[asyncio.Task] = set()

    # ---- чтение ----

    def peek(self, key: QueryKey) -> CacheEntry | None:
        return self._entries.get(key)

    def get(self, key: QueryKey, default: Any = None, *, revalidate: bool = True) -> Any:
        """
        Назначение:
            Вернуть последнее известное значение, даже если оно устарело.

        Алгоритм:
            - Значение отдаётся синхронно.
            - Если запись устарела и у неё есть fetcher, в фоне запускается
              повторная загрузка (при наличии запущенного event loop).
        """
        entry = self._entries.get(key)
        if entry is None or not entry.has_value:
            return default
        if revalidate and self._expired(entry) and entry.options is not None and _loop_running():
            self._start_fetch(entry)
        return entry.value

    def is_stale(self, key: QueryKey) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return True
        return self._expired(entry)

    def keys_matching(self, prefix: QueryKey) -> list[QueryKey]:
        return [key for key in self._entries if key_matches(key, prefix)]

    # ---- запись ----

    def set(self, key: QueryKey, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, updates: Mapping[QueryKey, Any]) -> None:
        """
        Назначение:
            Записать несколько значений одним синхронным шагом.

        Контракт:
            - Подписчики уведомляются только после записи всех значений,
              поэтому ни один из них не видит частично применённое обновление.
            - Флаг is_stale не меняется: локальная запись не делает данные
              авторитетными.
        """
        now = self._clock()
        touched: list[CacheEntry] = []
        for key, value in updates.items():
            entry = self._ensure(key)
            entry.value = value
            entry.has_value = True
            entry.updated_at = now
            entry.version += 1
            touched.append(entry)
        for entry in touched:
            self._notify(entry)

    def invalidate(self, prefix: QueryKey, *, exact: bool = False, refetch: RefetchMode = "active") -> list[QueryKey]:
        """
        Назначение:
            Пометить записи устаревшими и запланировать фоновую загрузку.

        Контракт:
            - exact=False: затрагиваются все ключи с данным префиксом.
            - refetch="active": перезагружаются только записи с подписчиками;
              "all": все записи с fetcher; "none": только пометка.
            - Загрузки, начатые до инвалидации, не смогут записать результат.
        """
        if exact:
            keys = [prefix] if prefix in self._entries else []
        else:
            keys = self.keys_matching(prefix)

        entries = [self._entries[key] for key in keys]
        for entry in entries:
            entry.is_stale = True
            entry.version += 1
        for entry in entries:
            self._notify(entry)

        if refetch != "none" and _loop_running():
            for entry in entries:
                if entry.options is None or self._is_held(entry.key):
                    continue
                if refetch == "all" or entry.listeners:
                    self._start_fetch(entry)

        if keys:
            logEvent(
                self.logger,
                logging.DEBUG,
                self.run_id,
                "cache",
                f"invalidate prefix={prefix!r} keys={len(keys)} refetch={refetch}",
            )
        return keys

    # ---- загрузка ----

    async def fetch(self, key: QueryKey, options: QueryOptions | None = None, *, force: bool = False) -> Any:
        """
        Назначение:
            Получить значение записи, загрузив его при необходимости.

        Алгоритм:
            - Свежая запись (и force=False) отдаётся без сети.
            - Одновременные загрузки одной версии записи объединяются.
            - Если ответ опоздал (запись изменена локально, инвалидирована или
              удерживается мутацией), он не записывается, а вызывающему
              возвращается текущее значение кэша.
        """
        entry = self._ensure(key, options)
        if entry.options is None:
            raise ValueError(f"No fetcher registered for query {key!r}")
        if not force and entry.has_value and not self._expired(entry):
            return entry.value
        task = self._start_fetch(entry)
        return await asyncio.shield(task)

    def refetch(self, key: QueryKey) -> asyncio.Task | None:
        """Запустить фоновую загрузку записи, если для неё известен fetcher."""
        entry = self._entries.get(key)
        if entry is None or entry.options is None:
            return None
        return self._start_fetch(entry)

    # ---- подписки ----

    def subscribe(self, key: QueryKey, listener: Listener, options: QueryOptions | None = None) -> Subscription:
        """
        Назначение:
            Подписать потребителя на изменения записи.

        Контракт:
            - При подписке на отсутствующую или устаревшую запись с fetcher
              сразу запускается фоновая загрузка.
            - После unsubscribe() слушатель больше не вызывается, даже если
              начатая ранее загрузка завершится позже.
        """
        entry = self._ensure(key, options)
        entry.listeners.append(listener)
        subscription = Subscription(self, key, listener)
        if entry.options is not None and self._expired(entry) and _loop_running():
            self._start_fetch(entry)
        return subscription

    def subscriber_count(self, key: QueryKey) -> int:
        entry = self._entries.get(key)
        return len(entry.listeners) if entry is not None else 0

    # ---- мутации и жизненный цикл ----

    def hold(self, prefix: QueryKey) -> MutationHold:
        self._holds[prefix] = self._holds.get(prefix, 0) + 1
        return MutationHold(self, prefix)

    def clear(self) -> None:
        """
        Назначение:
            Сброс всех записей при завершении сессии (logout).
            Загрузки, ещё находящиеся в полёте, ничего не запишут.
        """
        count = len(self._entries)
        for entry in self._entries.values():
            entry.listeners.clear()
        self._entries.clear()
        self._holds.clear()
        logEvent(self.logger, logging.INFO, self.run_id, "cache", f"cache cleared entries={count}")

    async def close(self) -> None:
        self.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Дождаться завершения всех фоновых загрузок (включая порождённые ими)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---- внутреннее ----

    def _ensure(self, key: QueryKey, options: QueryOptions | None = None) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
        if options is not None:
            entry.options = options
        return entry

    def _expired(self, entry: CacheEntry) -> bool:
        if entry.is_stale or entry.fetched_at is None:
            return True
        stale_seconds = entry.options.stale_seconds if entry.options is not None else 0.0
        return self._clock() - entry.fetched_at >= stale_seconds

    def _is_held(self, key: QueryKey) -> bool:
        return any(key_matches(key, prefix) for prefix in self._holds)

    def _release_hold(self, prefix: QueryKey) -> None:
        count = self._holds.get(prefix, 0) - 1
        if count <= 0:
            self._holds.pop(prefix, None)
        else:
            self._holds[prefix] = count

    def _accepts(self, entry: CacheEntry, version: int) -> bool:
        return (
            self._entries.get(entry.key) is entry
            and entry.version == version
            and not self._is_held(entry.key)
        )

    def _start_fetch(self, entry: CacheEntry) -> asyncio.Task:
        if entry.in_flight is not None and not entry.in_flight.done() and entry.in_flight_version == entry.version:
            return entry.in_flight
        version = entry.version
        task = asyncio.get_running_loop().create_task(self._load(entry, version))
        entry.in_flight = task
        entry.in_flight_version = version
        entry.is_fetching = True
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        self._notify(entry)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled():
            # ошибка уже записана в entry.error и в лог
            task.exception()

    def _finish_fetching(self, entry: CacheEntry) -> None:
        if entry.in_flight is asyncio.current_task():
            entry.in_flight = None
            entry.is_fetching = False

    async def _load(self, entry: CacheEntry, version: int) -> Any:
        options = entry.options
        degraded_by: BaseException | None = None
        try:
            try:
                value = await options.fetcher()
            except options.degrade_on as exc:
                degraded_by = exc
                value = options.fallback() if options.fallback is not None else None
                logEvent(
                    self.logger,
                    logging.WARNING,
                    self.run_id,
                    "cache",
                    f"fetch degraded key={entry.key!r} error={exc}",
                )
            finally:
                self._finish_fetching(entry)
        except Exception as exc:
            if self._accepts(entry, version):
                entry.error = exc
                self._notify(entry)
            logEvent(self.logger, logging.ERROR, self.run_id, "cache", f"fetch failed key={entry.key!r} error={exc}")
            raise

        if not self._accepts(entry, version):
            logEvent(
                self.logger,
                logging.DEBUG,
                self.run_id,
                "cache",
                f"fetch result discarded key={entry.key!r} started_version={version} current_version={entry.version}",
            )
            if self._entries.get(entry.key) is entry:
                self._notify(entry)
            return entry.value if entry.has_value else value

        now = self._clock()
        entry.value = value
        entry.has_value = True
        entry.fetched_at = now
        entry.updated_at = now
        entry.version += 1
        entry.is_stale = degraded_by is not None
        entry.error = degraded_by
        self._notify(entry)
        return value

    def _remove_listener(self, key: QueryKey, listener: Listener) -> None:
        entry = self._entries.get(key)
        if entry is not None and listener in entry.listeners:
            entry.listeners.remove(listener)

    def _notify(self, entry: CacheEntry) -> None:
        for listener in list(entry.listeners):
            if listener not in entry.listeners:
                continue
            try:
                listener(entry)
            except Exception as exc:
                logEvent(
                    self.logger,
                    logging.ERROR,
                    self.run_id,
                    "cache",
                    f"listener failed key={entry.key!r} error={exc}",
                )


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


__all__ = ["CacheEntry", "MutationHold", "QueryCache", "QueryOptions", "Subscription"]
