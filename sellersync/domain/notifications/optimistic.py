from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Hashable, Mapping, Union

from sellersync.domain.models import NotificationRecord, PageResult, UnreadAggregate, compute_total_pages


@dataclass(frozen=True)
class MarkRead:
    notification_id: str
    at: datetime


@dataclass(frozen=True)
class MarkAllRead:
    at: datetime


@dataclass(frozen=True)
class Delete:
    notification_id: str


NotificationOperation = Union[MarkRead, MarkAllRead, Delete]


@dataclass(frozen=True)
class NotificationSnapshot:
    """
    Назначение/ответственность:
        Неизменяемая копия пары «закэшированные списки + счётчик непрочитанных».
    Инварианты/гарантии:
        - lists содержит только записи кэша с данными (ключ -> PageResult).
        - unread=None означает, что счётчик ещё не загружен.
    """

    lists: Mapping[Hashable, PageResult[NotificationRecord]] = field(default_factory=dict)
    unread: UnreadAggregate | None = None

    def find(self, notification_id: str) -> NotificationRecord | None:
        for page in self.lists.values():
            for record in page.records:
                if record.id == notification_id:
                    return record
        return None


def apply_optimistic_change(snapshot: NotificationSnapshot, operation: NotificationOperation) -> NotificationSnapshot:
    """
    Назначение:
        Вычислить оптимистичное состояние списков и счётчика после мутации.

    Контракт (вход/выход):
        Вход: снимок и операция (MarkRead | MarkAllRead | Delete).
        Выход: новый снимок; исходный не изменяется. Неизменённые страницы
        возвращаются теми же объектами (сравнение по identity допустимо).

    Алгоритм:
        - MarkRead: запись помечается прочитанной во всех списках; счётчик
          уменьшается на 1, только если запись найдена локально и была
          непрочитанной. Неизвестная локально запись счётчик не трогает,
          расхождение исправит последующий refetch.
        - MarkAllRead: все записи прочитаны, счётчик ровно 0 (в т.ч. если
          он ещё не был загружен).
        - Delete: запись удаляется из всех списков (total уменьшается);
          счётчик уменьшается, только если удалённая запись была непрочитанной.
        - count никогда не уходит ниже 0.
    """
    if isinstance(operation, MarkRead):
        target = snapshot.find(operation.notification_id)
        lists = _map_records(
            snapshot.lists,
            lambda r: r.mark_read(operation.at) if r.id == operation.notification_id else r,
        )
        unread = snapshot.unread
        if unread is not None and target is not None and not target.read:
            unread = unread.decremented()
        return NotificationSnapshot(lists=lists, unread=unread)

    if isinstance(operation, MarkAllRead):
        lists = _map_records(snapshot.lists, lambda r: r.mark_read(operation.at))
        return NotificationSnapshot(lists=lists, unread=UnreadAggregate(0))

    if isinstance(operation, Delete):
        target = snapshot.find(operation.notification_id)
        lists = {key: _without(page, operation.notification_id) for key, page in snapshot.lists.items()}
        unread = snapshot.unread
        if unread is not None and target is not None and not target.read:
            unread = unread.decremented()
        return NotificationSnapshot(lists=lists, unread=unread)

    raise TypeError(f"Unsupported notification operation: {operation!r}")


def _map_records(lists, fn) -> dict:
    result = {}
    for key, page in lists.items():
        records = tuple(fn(r) for r in page.records)
        changed = any(new is not old for new, old in zip(records, page.records))
        result[key] = page.with_records(records) if changed else page
    return result


def _without(page: PageResult[NotificationRecord], notification_id: str) -> PageResult[NotificationRecord]:
    records = tuple(r for r in page.records if r.id != notification_id)
    if len(records) == len(page.records):
        return page
    removed = len(page.records) - len(records)
    total = max(0, page.total - removed)
    return replace(page, records=records, total=total, total_pages=compute_total_pages(total, page.limit))


__all__ = [
    "MarkRead",
    "MarkAllRead",
    "Delete",
    "NotificationOperation",
    "NotificationSnapshot",
    "apply_optimistic_change",
]
