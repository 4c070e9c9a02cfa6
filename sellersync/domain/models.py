from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Sequence, TypeVar

T = TypeVar("T")


class NotificationKind(str, Enum):
    ORDER = "order"
    DELIVERY = "delivery"
    PAYOUT = "payout"
    FINANCE = "finance"
    SUPPORT = "support"
    PRODUCT = "product"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | None) -> "NotificationKind":
        """Неизвестные и пустые значения сводятся к OTHER."""
        if not value:
            return cls.OTHER
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


class TransactionDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"

    @classmethod
    def from_amount(cls, amount: float) -> "TransactionDirection":
        return cls.CREDIT if amount >= 0 else cls.DEBIT


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class NotificationRecord:
    """
    Назначение:
        Локальная копия уведомления из удалённого хранилища.
    Инварианты/гарантии:
        - id уникален в пределах аккаунта.
        - Меняется только через операции NotificationSyncEngine (через replace()).
    """

    id: str
    kind: NotificationKind
    title: str
    message: str
    read: bool
    created_at: datetime | None = None
    read_at: datetime | None = None
    action_target: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def mark_read(self, at: datetime) -> "NotificationRecord":
        if self.read:
            return self
        return replace(self, read=True, read_at=at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "message": self.message,
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "action_target": self.action_target,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class UnreadAggregate:
    """
    Назначение:
        Закэшированный счётчик непрочитанных уведомлений.
    Инварианты/гарантии:
        - count >= 0; отрицательные значения отклоняются при создании.
    """

    count: int

    def __post_init__(self) -> None:
        if self.count < 0:
            raise ValueError(f"Unread count must be non-negative, got {self.count}")

    def decremented(self, by: int = 1) -> "UnreadAggregate":
        return UnreadAggregate(max(0, self.count - by))


@dataclass(frozen=True)
class TransactionReferences:
    order_id: str | None = None
    order_number: str | None = None
    withdrawal_id: str | None = None

    def values(self) -> list[str]:
        return [v for v in (self.order_id, self.order_number, self.withdrawal_id) if v]


@dataclass(frozen=True)
class TransactionRecord:
    id: str
    amount: float
    direction: TransactionDirection
    status: TransactionStatus
    created_at: datetime | None = None
    description: str = ""
    references: TransactionReferences = field(default_factory=TransactionReferences)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "amount": self.amount,
            "direction": self.direction.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "description": self.description,
            "references": {
                "order_id": self.references.order_id,
                "order_number": self.references.order_number,
                "withdrawal_id": self.references.withdrawal_id,
            },
        }


def compute_total_pages(total: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return math.ceil(total / limit)


@dataclass(frozen=True)
class PageResult(Generic[T]):
    """
    Назначение:
        Страница результатов с метаданными пагинации.
    Контракт:
        - total_pages = ceil(total / limit), если сервер его не прислал.
        - skipped: сколько записей ответа отброшено при разборе.
    """

    records: tuple[T, ...]
    page: int
    limit: int
    total: int
    total_pages: int
    skipped: int = 0

    @classmethod
    def build(
        cls,
        records: Sequence[T],
        page: int,
        limit: int,
        total: int | None = None,
        total_pages: int | None = None,
        skipped: int = 0,
    ) -> "PageResult[T]":
        if total is None:
            total = len(records)
        if total_pages is None:
            total_pages = compute_total_pages(total, limit)
        return cls(
            records=tuple(records),
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            skipped=skipped,
        )

    @classmethod
    def empty(cls, page: int, limit: int) -> "PageResult[T]":
        return cls(records=(), page=page, limit=limit, total=0, total_pages=0)

    def with_records(self, records: Sequence[T]) -> "PageResult[T]":
        return replace(self, records=tuple(records))

    def to_dict(self) -> dict[str, Any]:
        return {
            "records": [r.to_dict() if hasattr(r, "to_dict") else r for r in self.records],
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
        }


@dataclass(frozen=True)
class Pagination:
    page: int = 1
    limit: int = 50

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError(f"page must be >= 1, got {self.page}")
        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")


@dataclass(frozen=True)
class NotificationFilters:
    """Фильтры списка уведомлений; None означает «без ограничения»."""

    read: bool | None = None
    kind: NotificationKind | None = None

    def as_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.kind is not None:
            params["kind"] = self.kind.value
        if self.read is not None:
            params["read"] = self.read
        return params


@dataclass(frozen=True)
class DateRange:
    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self) -> None:
        # границы без часового пояса считаются UTC, как и в parse_timestamp
        for name in ("start", "end"):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                object.__setattr__(self, name, value.replace(tzinfo=timezone.utc))

    def contains(self, value: datetime | None) -> bool:
        if self.start is None and self.end is None:
            return True
        if value is None:
            return False
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


@dataclass(frozen=True)
class TransactionFilters:
    """
    Назначение:
        Фильтры списка транзакций.
    Контракт:
        - Все поля необязательны, условия объединяются по AND.
        - search_term ищется без учёта регистра в description и references.
    """

    direction: TransactionDirection | None = None
    status: TransactionStatus | None = None
    date_range: DateRange | None = None
    search_term: str | None = None

    def as_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.direction is not None:
            params["direction"] = self.direction.value
        if self.status is not None:
            params["status"] = self.status.value
        if self.date_range is not None:
            if self.date_range.start is not None:
                params["start"] = self.date_range.start.isoformat()
            if self.date_range.end is not None:
                params["end"] = self.date_range.end.isoformat()
        if self.search_term:
            params["search"] = self.search_term
        return params

    def matches(self, record: TransactionRecord) -> bool:
        if self.direction is not None and record.direction != self.direction:
            return False
        if self.status is not None and record.status != self.status:
            return False
        if self.date_range is not None and not self.date_range.contains(record.created_at):
            return False
        if self.search_term:
            needle = self.search_term.strip().lower()
            haystack = [record.description or ""] + record.references.values()
            if not any(needle in part.lower() for part in haystack):
                return False
        return True


@dataclass(frozen=True)
class Ack:
    """Подтверждение мутации от сервера."""

    ok: bool = True
    message: str | None = None
    payload: dict[str, Any] | None = None
