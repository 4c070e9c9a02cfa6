from __future__ import annotations

import asyncio
from typing import Any

import httpx

from sellersync.common.sanitize import truncateText
from sellersync.domain.error_codes import ErrorCode
from sellersync.domain.exceptions import ConnectivityLost, NotFound, ServerError, ValidationError

RETRYABLE_METHODS = ("GET",)


class SellerApiClient:
    def __init__(
        self,
        baseUrl: str,
        token: str | None = None,
        timeoutSeconds: float = 20.0,
        tlsSkipVerify: bool = False,
        caFile: str | None = None,
        retries: int = 3,
        retryBackoffSeconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Назначение:
            Асинхронный клиент API панели продавца с простой политикой ретраев.
        Контракт:
            - baseUrl обязателен; token передаётся как Bearer (выдача токена вне пакета).
            - Ретраи (429/5xx/сетевые ошибки) только для GET; мутации выполняются
              одной попыткой.
            - Отказы: ConnectivityLost, NotFound, ValidationError, ServerError.
        """
        verify: bool | str = True
        if tlsSkipVerify:
            verify = False
        elif caFile:
            verify = caFile

        self.baseUrl = baseUrl.rstrip("/")
        self.token = token
        self.retries = retries
        self.retryBackoffSeconds = retryBackoffSeconds
        self.retry_attempts = 0

        self.client = httpx.AsyncClient(
            base_url=self.baseUrl,
            timeout=timeoutSeconds,
            verify=verify,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def resetRetryAttempts(self) -> None:
        """Сбрасывает счётчик retry_attempts."""
        self.retry_attempts = 0

    def getRetryAttempts(self) -> int:
        """Возвращает количество выполненных повторных попыток."""
        return self.retry_attempts

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _should_retry(self, resp: httpx.Response) -> bool:
        """Решает, стоит ли повторить запрос (429 или 5xx)."""
        if resp.status_code == 429:
            return True
        if 500 <= resp.status_code <= 599:
            return True
        return False

    async def _sleep_backoff(self, attempt: int) -> None:
        """Задержка с экспоненциальным ростом для ретраев."""
        delay = self.retryBackoffSeconds * (2 ** attempt)
        await asyncio.sleep(delay)

    def _raise_for_status(self, resp: httpx.Response) -> None:
        body_snippet = truncateText(resp.text, 200) if resp.text else None
        details = {"body_snippet": body_snippet, "path": resp.request.url.path}
        status = resp.status_code
        if status == 404:
            raise NotFound(f"HTTP 404 {resp.request.url.path}", details=details)
        if status in (400, 422):
            raise ValidationError(_error_message(resp) or f"HTTP {status}", details=details, status_code=status)
        raise ServerError(status, f"HTTP {status}", details=details)

    async def requestJson(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        jsonBody: Any | None = None,
    ) -> Any:
        """
        Назначение:
            JSON-запрос с проверкой 2xx. Возвращает разобранное тело или None
            для пустого ответа.
        Алгоритм:
            - GET повторяется при сетевых ошибках и 429/5xx с экспоненциальной задержкой.
            - Сетевая ошибка после исчерпания попыток -> ConnectivityLost.
            - Не-2xx -> NotFound/ValidationError/ServerError.
        """
        method = method.upper()
        retries = self.retries if method in RETRYABLE_METHODS else 0
        params = {k: v for k, v in (params or {}).items() if v is not None}
        attempt = 0
        while True:
            try:
                resp = await self.client.request(method, path, params=params, headers=self._headers(), json=jsonBody)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if attempt >= retries:
                    raise ConnectivityLost(f"Network error: {exc.__class__.__name__}", details={"path": path}) from exc
                self.retry_attempts += 1
                await self._sleep_backoff(attempt)
                attempt += 1
                continue

            if 200 <= resp.status_code <= 299:
                if not resp.text:
                    return None
                try:
                    return resp.json()
                except ValueError as exc:
                    raise ServerError(
                        resp.status_code,
                        "Invalid JSON response",
                        code=ErrorCode.INVALID_JSON,
                        details={"body_snippet": truncateText(resp.text, 200)},
                    ) from exc

            if self._should_retry(resp) and attempt < retries:
                self.retry_attempts += 1
                await self._sleep_backoff(attempt)
                attempt += 1
                continue

            self._raise_for_status(resp)

    async def getJson(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self.requestJson("GET", path, params=params)


def _error_message(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return None


__all__ = ["SellerApiClient"]
