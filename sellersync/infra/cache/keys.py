from __future__ import annotations

from typing import Any, Hashable, Mapping

QueryKey = tuple

NOTIFICATIONS = ("notifications",)
NOTIFICATION_LISTS = ("notifications", "list")
UNREAD_AGGREGATE = ("notifications", "unread")
TRANSACTIONS = ("transactions",)
TRANSACTION_LISTS = ("transactions", "list")
TRANSACTION_DETAILS = ("transactions", "detail")


def make_key(*parts: Hashable, params: Mapping[str, Any] | None = None) -> QueryKey:
    """
    Назначение:
        Построить ключ запроса: префикс ресурса + отсортированные параметры.

    Контракт:
        - Параметры со значением None отбрасываются, поэтому {"kind": None}
          и {} дают один и тот же ключ.
        - Значения параметров должны быть hashable.
    """
    key = tuple(parts)
    if params is not None:
        items = tuple(sorted((k, v) for k, v in params.items() if v is not None))
        key = key + (items,)
    return key


def key_matches(key: QueryKey, prefix: QueryKey) -> bool:
    return key[: len(prefix)] == prefix
