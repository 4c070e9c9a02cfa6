from __future__ import annotations

from typing import Protocol, runtime_checkable

from sellersync.domain.models import (
    Ack,
    NotificationFilters,
    NotificationRecord,
    PageResult,
    Pagination,
    TransactionFilters,
    TransactionRecord,
    UnreadAggregate,
)


@runtime_checkable
class NotificationRemoteProtocol(Protocol):
    """
    Назначение:
        Контракт удалённых операций над уведомлениями.

    Контракт:
        - Возвращает нормализованные модели domain.models.
        - Отказы только в виде ConnectivityLost / NotFound / ServerError / ValidationError.
    """

    async def list_notifications(
        self,
        filters: NotificationFilters,
        pagination: Pagination,
    ) -> PageResult[NotificationRecord]: ...

    async def get_unread_aggregate(self) -> UnreadAggregate: ...
    async def mark_notification_read(self, notification_id: str) -> Ack: ...
    async def mark_all_notifications_read(self) -> Ack: ...
    async def delete_notification(self, notification_id: str) -> Ack: ...


@runtime_checkable
class TransactionRemoteProtocol(Protocol):
    """
    Назначение:
        Контракт удалённых операций над транзакциями.

    Ограничения:
        get_transaction_by_id необязателен: бэкенд может его не реализовывать
        (метод отсутствует, NotImplementedError или HTTP 404). Поэтому он
        не входит в протокол и проверяется через DirectLookupCapable.
    """

    async def list_transactions(
        self,
        filters: TransactionFilters | None,
        page: int,
        limit: int,
    ) -> PageResult[TransactionRecord]: ...


@runtime_checkable
class DirectLookupCapable(Protocol):
    async def get_transaction_by_id(self, transaction_id: str) -> TransactionRecord | None: ...


@runtime_checkable
class RemoteResourceClientProtocol(NotificationRemoteProtocol, TransactionRemoteProtocol, Protocol):
    """Полный удалённый клиент, потребляемый SyncSession."""


__all__ = [
    "NotificationRemoteProtocol",
    "TransactionRemoteProtocol",
    "DirectLookupCapable",
    "RemoteResourceClientProtocol",
]
