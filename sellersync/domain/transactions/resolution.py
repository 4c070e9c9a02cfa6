from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Protocol

from sellersync.domain.error_codes import ErrorCode
from sellersync.domain.exceptions import NotFound, RemoteError
from sellersync.domain.models import TransactionRecord
from sellersync.domain.ports.remote import DirectLookupCapable, TransactionRemoteProtocol
from sellersync.infra.logging.setup import logEvent

Tier = Literal["direct", "scan"]


@dataclass(frozen=True)
class Resolution:
    """
    Назначение:
        Результат разрешения транзакции по id.
    Контракт:
        - record.id совпадает с запрошенным id.
        - tier: какой уровень нашёл запись; pages_scanned > 0 только для scan.
    """

    record: TransactionRecord
    tier: Tier
    pages_scanned: int = 0


@dataclass(frozen=True)
class LookupOutcome:
    """
    Исход попытки одного уровня.
    supported=False означает, что прямой поиск недоступен на этом бэкенде
    (метод отсутствует или NotImplementedError).
    """

    record: TransactionRecord | None
    supported: bool = True
    error: BaseException | None = None
    pages_scanned: int = 0


class ResolutionStrategy(Protocol):
    tier: Tier

    async def attempt(self, transaction_id: str) -> LookupOutcome: ...


class DirectLookup:
    """
    Назначение/ответственность:
        Уровень 1: прямой запрос записи по id.

    Ограничения:
        Любой отказ (отсутствующий метод, NotFound, ServerError, в т.ч. 401/403)
        не является фатальным: он возвращается в LookupOutcome.error и
        логируется, а разрешение переходит к уровню 2. Отказы авторизации
        здесь не отличаются от «метод не реализован».
    """

    tier: Tier = "direct"

    def __init__(self, remote: TransactionRemoteProtocol, logger: logging.Logger, run_id: str):
        self.remote = remote
        self.logger = logger
        self.run_id = run_id

    async def attempt(self, transaction_id: str) -> LookupOutcome:
        if not isinstance(self.remote, DirectLookupCapable):
            return LookupOutcome(record=None, supported=False)
        try:
            record = await self.remote.get_transaction_by_id(transaction_id)
        except NotImplementedError as exc:
            return LookupOutcome(record=None, supported=False, error=exc)
        except RemoteError as exc:
            logEvent(
                self.logger,
                logging.WARNING,
                self.run_id,
                "transactions",
                f"direct lookup failed id={transaction_id} code={exc.code}, falling back to scan",
            )
            return LookupOutcome(record=None, error=exc)
        except Exception as exc:
            logEvent(
                self.logger,
                logging.WARNING,
                self.run_id,
                "transactions",
                f"direct lookup failed id={transaction_id} error={exc!r}, falling back to scan",
            )
            return LookupOutcome(record=None, error=exc)
        if record is None or record.id != transaction_id:
            return LookupOutcome(record=None)
        return LookupOutcome(record=record)


class ScanFallback:
    """
    Назначение/ответственность:
        Уровень 2: ограниченный постраничный перебор списка транзакций.

    Алгоритм:
        - Страницы page_size записей запрашиваются по возрастанию, начиная с 1.
        - Найденная запись возвращается сразу.
        - Остановка, если страница короче page_size (конец данных); пропущенные
          при разборе записи учитываются в длине страницы.
        - Остановка после max_pages страниц (жёсткая граница стоимости).

    Ошибки/исключения:
        Отказы list_transactions пробрасываются: в отличие от уровня 1,
        уровень 2 не имеет запасного варианта.
    """

    tier: Tier = "scan"

    def __init__(self, remote: TransactionRemoteProtocol, page_size: int = 100, max_pages: int = 10):
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        if max_pages < 1:
            raise ValueError(f"max_pages must be >= 1, got {max_pages}")
        self.remote = remote
        self.page_size = page_size
        self.max_pages = max_pages

    async def attempt(self, transaction_id: str) -> LookupOutcome:
        page = 1
        while page <= self.max_pages:
            result = await self.remote.list_transactions(None, page, self.page_size)
            for record in result.records:
                if record.id == transaction_id:
                    return LookupOutcome(record=record, pages_scanned=page)
            if len(result.records) + result.skipped < self.page_size:
                break
            page += 1
        return LookupOutcome(record=None, pages_scanned=min(page, self.max_pages))


class TransactionResolver:
    """
    Назначение/ответственность:
        Двухуровневое разрешение транзакции: DirectLookup, затем ScanFallback.

    Ограничения:
        По умолчанию уровень 1 пробуется при каждом вызове. При
        remember_direct_lookup_support=True, как только бэкенд показал, что
        прямой поиск не поддерживается (supported=False), уровень 1
        пропускается в последующих вызовах.
    """

    def __init__(
        self,
        direct: ResolutionStrategy,
        scan: ResolutionStrategy,
        remember_direct_lookup_support: bool = False,
    ):
        self.direct = direct
        self.scan = scan
        self.remember_direct_lookup_support = remember_direct_lookup_support
        self.direct_supported: bool | None = None

    async def resolve(self, transaction_id: str) -> Resolution:
        if not (self.remember_direct_lookup_support and self.direct_supported is False):
            outcome = await self.direct.attempt(transaction_id)
            if not outcome.supported:
                self.direct_supported = False
            elif outcome.error is None:
                self.direct_supported = True
            if outcome.record is not None:
                return Resolution(record=outcome.record, tier="direct")

        outcome = await self.scan.attempt(transaction_id)
        if outcome.record is not None:
            return Resolution(record=outcome.record, tier="scan", pages_scanned=outcome.pages_scanned)

        raise NotFound(
            f"Transaction not found: {transaction_id}",
            code=ErrorCode.TRANSACTION_NOT_FOUND,
            details={"transaction_id": transaction_id, "pages_scanned": outcome.pages_scanned},
        )


__all__ = [
    "DirectLookup",
    "LookupOutcome",
    "Resolution",
    "ResolutionStrategy",
    "ScanFallback",
    "TransactionResolver",
]
