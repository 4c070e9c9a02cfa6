from __future__ import annotations

from typing import Any

from sellersync.common.time import parse_timestamp
from sellersync.domain.exceptions import ServerError
from sellersync.domain.error_codes import ErrorCode
from sellersync.domain.models import (
    NotificationKind,
    NotificationRecord,
    PageResult,
    TransactionDirection,
    TransactionRecord,
    TransactionReferences,
    TransactionStatus,
    UnreadAggregate,
)


def unwrap_data(payload: Any) -> Any:
    """
    Назначение:
        Снять конверт ответа API: {"data": {"data": ...}} -> ..., {"data": ...} -> ...
    """
    data = payload
    for _ in range(2):
        if isinstance(data, dict) and "data" in data and data["data"] is not None:
            data = data["data"]
        else:
            break
    return data


def _record_id(raw: dict[str, Any]) -> str:
    value = raw.get("_id", raw.get("id"))
    if value is None:
        raise ServerError(None, "Record without id in response", code=ErrorCode.INVALID_JSON)
    return str(value)


def _as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _extract_list(data: Any, key: str) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for candidate in (key, "items", "results"):
            value = data.get(candidate)
            if isinstance(value, list):
                return value
    raise ServerError(None, f"Unexpected response format: no {key} array", code=ErrorCode.INVALID_JSON)


def _build_page(payload: Any, records: list, page: int, limit: int, skipped: int = 0) -> PageResult:
    """
    Метаданные пагинации ищутся в конверте и во вложенных data/pagination;
    total_pages вычисляется как ceil(total / limit), если сервер его не прислал.
    """
    sources: list[dict[str, Any]] = []
    data = payload
    while isinstance(data, dict):
        sources.append(data)
        if isinstance(data.get("pagination"), dict):
            sources.append(data["pagination"])
        data = data.get("data")

    def pick(*names: str) -> int | None:
        for source in sources:
            for name in names:
                value = _as_int(source.get(name))
                if value is not None:
                    return value
        return None

    resolved_limit = pick("limit") or limit
    total = pick("total", "totalCount")
    if total is None:
        total = len(records)
    return PageResult.build(
        records,
        page=pick("page", "currentPage") or page,
        limit=resolved_limit,
        total=total,
        total_pages=pick("totalPages", "pages"),
        skipped=skipped,
    )


def map_notification(raw: dict[str, Any]) -> NotificationRecord:
    metadata = raw.get("metadata") or {}
    return NotificationRecord(
        id=_record_id(raw),
        kind=NotificationKind.parse(raw.get("type") or raw.get("kind")),
        title=str(raw.get("title") or ""),
        message=str(raw.get("message") or ""),
        read=bool(raw.get("read", False)),
        read_at=parse_timestamp(raw.get("readAt")),
        created_at=parse_timestamp(raw.get("createdAt")),
        action_target=raw.get("actionUrl") or raw.get("actionTarget"),
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
    )


def map_notification_page(payload: Any, page: int, limit: int) -> PageResult[NotificationRecord]:
    records = [map_notification(raw) for raw in _extract_list(unwrap_data(payload), "notifications")]
    return _build_page(payload, records, page, limit)


def map_unread(payload: Any) -> UnreadAggregate:
    data = unwrap_data(payload)
    count = None
    if isinstance(data, dict):
        count = data.get("unreadCount", data.get("count"))
    elif isinstance(data, int):
        count = data
    if count is None:
        raise ServerError(None, "Unexpected response format: no unreadCount", code=ErrorCode.INVALID_JSON)
    return UnreadAggregate(max(0, int(count)))


def map_transaction(raw: dict[str, Any]) -> TransactionRecord:
    """
    Назначение:
        Нормализация транзакции из ответа API.

    Алгоритм:
        - direction берётся из type/direction, иначе по знаку amount.
        - status по умолчанию completed.
        - references: sellerOrder.order.orderNumber, orderId, payoutRequest._id.
    """
    amount = float(raw.get("amount") or 0)
    direction_raw = raw.get("type") or raw.get("direction")
    if direction_raw in (TransactionDirection.CREDIT.value, TransactionDirection.DEBIT.value):
        direction = TransactionDirection(direction_raw)
    else:
        direction = TransactionDirection.from_amount(amount)

    status_raw = str(raw.get("status") or TransactionStatus.COMPLETED.value).lower()
    try:
        status = TransactionStatus(status_raw)
    except ValueError:
        raise ServerError(None, f"Unknown transaction status: {status_raw}", code=ErrorCode.INVALID_JSON)

    seller_order = raw.get("sellerOrder") or {}
    order = seller_order.get("order") if isinstance(seller_order, dict) else None
    payout = raw.get("payoutRequest")
    order_id = raw.get("orderId")
    withdrawal_id = payout.get("_id") if isinstance(payout, dict) else raw.get("withdrawalId")
    references = TransactionReferences(
        order_id=str(order_id) if order_id else None,
        order_number=str(order["orderNumber"]) if isinstance(order, dict) and order.get("orderNumber") else None,
        withdrawal_id=str(withdrawal_id) if withdrawal_id else None,
    )

    return TransactionRecord(
        id=_record_id(raw),
        amount=amount,
        direction=direction,
        status=status,
        created_at=parse_timestamp(raw.get("createdAt")),
        description=str(raw.get("description") or ""),
        references=references,
    )


def map_transaction_page(payload: Any, page: int, limit: int) -> PageResult[TransactionRecord]:
    """
    Записи, которые не удалось разобрать (неизвестный status, нет id),
    пропускаются и учитываются в PageResult.skipped; остальная страница
    остаётся пригодной, в том числе для сканирования при поиске по id.
    """
    records: list[TransactionRecord] = []
    skipped = 0
    for raw in _extract_list(unwrap_data(payload), "transactions"):
        try:
            records.append(map_transaction(raw))
        except ServerError:
            skipped += 1
    return _build_page(payload, records, page, limit, skipped=skipped)


def map_transaction_detail(payload: Any) -> TransactionRecord | None:
    data = unwrap_data(payload)
    if isinstance(data, dict) and isinstance(data.get("transaction"), dict):
        data = data["transaction"]
    if not isinstance(data, dict) or not data:
        return None
    return map_transaction(data)
