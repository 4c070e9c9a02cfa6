from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from sellersync.common.run_id import generate_run_id
from sellersync.domain.mappers.payloads import (
    map_notification_page,
    map_transaction_detail,
    map_transaction_page,
    map_unread,
)
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
from sellersync.domain.ports.remote import RemoteResourceClientProtocol
from sellersync.infra.http.seller_client import SellerApiClient
from sellersync.infra.logging.setup import getLibraryLogger, logEvent

NOTIFICATIONS_PATH = "/notifications"
TRANSACTIONS_PATH = "/seller/me/transactions"


class HttpRemoteResourceClient(RemoteResourceClientProtocol):
    """
    Назначение/ответственность:
        Адаптер RemoteResourceClientProtocol поверх SellerApiClient.
        Строит пути и параметры запросов, нормализует ответы в модели domain.
    Ограничения:
        Отказы SellerApiClient (ConnectivityLost, NotFound, ValidationError,
        ServerError) пробрасываются без изменений.
    """

    def __init__(
        self,
        client: SellerApiClient,
        logger: logging.Logger | None = None,
        run_id: str | None = None,
    ):
        self.client = client
        self.logger = logger or getLibraryLogger()
        self.run_id = run_id or generate_run_id()

    async def list_notifications(
        self,
        filters: NotificationFilters,
        pagination: Pagination,
    ) -> PageResult[NotificationRecord]:
        params: dict[str, Any] = {"page": pagination.page, "limit": pagination.limit}
        if filters.kind is not None:
            params["type"] = filters.kind.value
        if filters.read is not None:
            params["read"] = "true" if filters.read else "false"
        payload = await self.client.getJson(NOTIFICATIONS_PATH, params=params)
        return map_notification_page(payload, pagination.page, pagination.limit)

    async def get_unread_aggregate(self) -> UnreadAggregate:
        payload = await self.client.getJson(f"{NOTIFICATIONS_PATH}/unread")
        return map_unread(payload)

    async def mark_notification_read(self, notification_id: str) -> Ack:
        payload = await self.client.requestJson("PATCH", f"{NOTIFICATIONS_PATH}/read/{_segment(notification_id)}")
        return _ack(payload)

    async def mark_all_notifications_read(self) -> Ack:
        payload = await self.client.requestJson("PATCH", f"{NOTIFICATIONS_PATH}/read-all")
        return _ack(payload)

    async def delete_notification(self, notification_id: str) -> Ack:
        payload = await self.client.requestJson("DELETE", f"{NOTIFICATIONS_PATH}/{_segment(notification_id)}")
        return _ack(payload)

    async def list_transactions(
        self,
        filters: TransactionFilters | None,
        page: int,
        limit: int,
    ) -> PageResult[TransactionRecord]:
        params: dict[str, Any] = {"page": page, "limit": limit}
        if filters is not None:
            if filters.direction is not None:
                params["type"] = filters.direction.value
            if filters.status is not None:
                params["status"] = filters.status.value
            if filters.date_range is not None:
                if filters.date_range.start is not None:
                    params["startDate"] = filters.date_range.start.isoformat()
                if filters.date_range.end is not None:
                    params["endDate"] = filters.date_range.end.isoformat()
            if filters.search_term:
                params["search"] = filters.search_term
        payload = await self.client.getJson(TRANSACTIONS_PATH, params=params)
        result = map_transaction_page(payload, page, limit)
        if result.skipped:
            logEvent(
                self.logger,
                logging.WARNING,
                self.run_id,
                "api",
                f"skipped {result.skipped} unparseable transactions on page={page}",
            )
        return result

    async def get_transaction_by_id(self, transaction_id: str) -> TransactionRecord | None:
        payload = await self.client.getJson(f"{TRANSACTIONS_PATH}/{_segment(transaction_id)}")
        return map_transaction_detail(payload)


def _segment(value: str) -> str:
    return quote(str(value), safe="")


def _ack(payload: Any) -> Ack:
    if isinstance(payload, dict):
        message = payload.get("message")
        return Ack(ok=True, message=message if isinstance(message, str) else None, payload=payload)
    return Ack(ok=True)


__all__ = ["HttpRemoteResourceClient"]
