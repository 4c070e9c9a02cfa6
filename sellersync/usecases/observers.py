from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from sellersync.infra.cache.keys import QueryKey
from sellersync.infra.cache.query_cache import CacheEntry, QueryCache, QueryOptions

T = TypeVar("T")


@dataclass(frozen=True)
class QueryState(Generic[T]):
    """
    Назначение:
        Снимок состояния запроса для UI-потребителя.
    Контракт:
        - is_loading: данных ещё нет и идёт загрузка.
        - is_fetching: идёт любая загрузка (в т.ч. фоновая при наличии данных).
        - is_stale: данные могут отставать от сервера.
    """

    data: T | None
    is_loading: bool
    is_fetching: bool
    is_stale: bool
    error: BaseException | None

    @property
    def is_error(self) -> bool:
        return self.error is not None


class QueryObserver(Generic[T]):
    """
    Назначение/ответственность:
        Read accessor текущей страницы/счётчика с флагами loading/error.
    Взаимодействия:
        Подписан на запись QueryCache; on_change вызывается при каждом
        изменении записи, пока наблюдатель не закрыт.
    Ограничения:
        После close() результаты загрузок, завершившихся позже, наблюдателю
        не доставляются.
    """

    def __init__(
        self,
        cache: QueryCache,
        key: QueryKey,
        options: QueryOptions,
        on_change: Callable[[QueryState[T]], None] | None = None,
        transform: Callable[[Any], T] | None = None,
    ):
        self.cache = cache
        self.key = key
        self._on_change = on_change
        self._transform = transform
        self._closed = False
        self._state: QueryState[T] = QueryState(None, True, False, True, None)
        self._subscription = cache.subscribe(key, self._handle, options)
        entry = cache.peek(key)
        if entry is not None:
            self._state = self._build_state(entry)

    @property
    def state(self) -> QueryState[T]:
        return self._state

    @property
    def data(self) -> T | None:
        return self._state.data

    @property
    def closed(self) -> bool:
        return self._closed

    def refetch(self):
        if self._closed:
            return None
        return self.cache.refetch(self.key)

    def close(self) -> None:
        self._closed = True
        self._subscription.unsubscribe()

    def _handle(self, entry: CacheEntry) -> None:
        if self._closed:
            return
        self._state = self._build_state(entry)
        if self._on_change is not None:
            self._on_change(self._state)

    def _build_state(self, entry: CacheEntry) -> QueryState[T]:
        data = entry.value if entry.has_value else None
        if data is not None and self._transform is not None:
            data = self._transform(data)
        return QueryState(
            data=data,
            is_loading=not entry.has_value and entry.is_fetching,
            is_fetching=entry.is_fetching,
            is_stale=self.cache.is_stale(entry.key),
            error=entry.error,
        )


class MutationState:
    """
    Назначение:
        Pending/error состояние одной точки входа мутации (mark_read и т.п.).
    Контракт:
        - is_pending истинно, пока выполняется хотя бы один вызов.
        - error хранит отказ последнего завершившегося вызова (None при успехе).
    """

    def __init__(self, name: str):
        self.name = name
        self._pending = 0
        self.error: BaseException | None = None
        self.last_result: Any = None

    @property
    def is_pending(self) -> bool:
        return self._pending > 0

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def begin(self) -> None:
        self._pending += 1

    def succeed(self, result: Any) -> None:
        self._pending = max(0, self._pending - 1)
        self.error = None
        self.last_result = result

    def fail(self, error: BaseException) -> None:
        self._pending = max(0, self._pending - 1)
        self.error = error

    def reset(self) -> None:
        self.error = None
        self.last_result = None
