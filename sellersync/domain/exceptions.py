from __future__ import annotations

from typing import Any

from sellersync.domain.error_codes import ErrorCode
from sellersync.errors import AppError


class RemoteError(AppError):
    """
    Назначение:
        Базовый класс отказов удалённого клиента (category="remote").
    Контракт:
        - code: значение ErrorCode.
        - status_code заполнен, если отказ пришёл с HTTP-ответом.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode | str,
        status_code: int | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            category="remote",
            code=code.value if isinstance(code, ErrorCode) else code,
            message=message,
            retryable=retryable,
            details=details or {},
        )
        self.status_code = status_code


class ConnectivityLost(RemoteError):
    """Сеть недоступна или истёк таймаут: ответа от сервера нет."""

    def __init__(self, message: str = "Connectivity lost", details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.CONNECTIVITY_LOST, retryable=True, details=details)


class NotFound(RemoteError):
    def __init__(
        self,
        message: str = "Not found",
        code: ErrorCode | str = ErrorCode.NOT_FOUND,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, status_code=404, details=details)


class ServerError(RemoteError):
    """
    Назначение:
        Неожиданный ответ сервера (5xx, 401/403 и прочие не-2xx, битый JSON).
    """

    def __init__(
        self,
        status: int | None,
        message: str | None = None,
        code: ErrorCode | str | None = None,
        details: dict[str, Any] | None = None,
    ):
        retryable = status == 429 or (status is not None and 500 <= status <= 599)
        super().__init__(
            message or f"HTTP {status}",
            code or ErrorCode.from_status(status),
            status_code=status,
            retryable=retryable,
            details=details,
        )
        self.status = status


class ValidationError(RemoteError):
    def __init__(self, message: str = "Validation failed", details: dict[str, Any] | None = None, status_code: int | None = None):
        super().__init__(message, ErrorCode.VALIDATION_ERROR, status_code=status_code, details=details)


__all__ = ["RemoteError", "ConnectivityLost", "NotFound", "ServerError", "ValidationError"]
