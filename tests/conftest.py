from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from sellersync.domain.exceptions import NotFound
from sellersync.domain.models import (
    Ack,
    NotificationKind,
    NotificationRecord,
    PageResult,
    TransactionDirection,
    TransactionRecord,
    TransactionReferences,
    TransactionStatus,
    UnreadAggregate,
)

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeRemote:
    """
    In-memory удалённое хранилище.
    fail[name]: исключение для вызова; gates[name]: asyncio.Event, которого
    вызов ждёт перед ответом (для проверки промежуточных состояний).
    """

    def __init__(self) -> None:
        self.notifications: list[NotificationRecord] = []
        self.transactions: list[TransactionRecord] = []
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def _enter(self, name: str, *args) -> None:
        self.calls.append((name,) + args)
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    async def list_notifications(self, filters, pagination):
        await self._enter("list_notifications", filters, pagination)
        records = [
            n
            for n in self.notifications
            if (filters.read is None or n.read == filters.read) and (filters.kind is None or n.kind == filters.kind)
        ]
        start = (pagination.page - 1) * pagination.limit
        return PageResult.build(
            records[start : start + pagination.limit],
            page=pagination.page,
            limit=pagination.limit,
            total=len(records),
        )

    async def get_unread_aggregate(self):
        await self._enter("get_unread_aggregate")
        return UnreadAggregate(sum(1 for n in self.notifications if not n.read))

    async def mark_notification_read(self, notification_id):
        await self._enter("mark_notification_read", notification_id)
        self.notifications = [
            n.mark_read(BASE_TIME) if n.id == notification_id else n for n in self.notifications
        ]
        return Ack()

    async def mark_all_notifications_read(self):
        await self._enter("mark_all_notifications_read")
        self.notifications = [n.mark_read(BASE_TIME) for n in self.notifications]
        return Ack()

    async def delete_notification(self, notification_id):
        await self._enter("delete_notification", notification_id)
        if not any(n.id == notification_id for n in self.notifications):
            raise NotFound(f"Notification not found: {notification_id}")
        self.notifications = [n for n in self.notifications if n.id != notification_id]
        return Ack()

    async def list_transactions(self, filters, page, limit):
        await self._enter("list_transactions", filters, page, limit)
        records = [t for t in self.transactions if filters is None or filters.matches(t)]
        start = (page - 1) * limit
        return PageResult.build(records[start : start + limit], page=page, limit=limit, total=len(records))


class FakeRemoteWithLookup(FakeRemote):
    async def get_transaction_by_id(self, transaction_id):
        await self._enter("get_transaction_by_id", transaction_id)
        for record in self.transactions:
            if record.id == transaction_id:
                return record
        raise NotFound(f"Transaction not found: {transaction_id}")


def build_notification(notification_id, read=False, kind=NotificationKind.ORDER, **overrides) -> NotificationRecord:
    record = NotificationRecord(
        id=str(notification_id),
        kind=kind,
        title=f"Notification {notification_id}",
        message="",
        read=read,
        created_at=BASE_TIME,
    )
    return replace(record, **overrides) if overrides else record


def build_transaction(
    transaction_id,
    amount=10.0,
    status=TransactionStatus.COMPLETED,
    direction=None,
    days=0,
    description="Order earning",
    order_id=None,
) -> TransactionRecord:
    return TransactionRecord(
        id=str(transaction_id),
        amount=amount,
        direction=direction or TransactionDirection.from_amount(amount),
        status=status,
        created_at=BASE_TIME + timedelta(days=days),
        description=description,
        references=TransactionReferences(order_id=order_id),
    )


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def remote_with_lookup() -> FakeRemoteWithLookup:
    return FakeRemoteWithLookup()


@pytest.fixture
def make_notification():
    return build_notification


@pytest.fixture
def make_transaction():
    return build_transaction
