from __future__ import annotations

import asyncio
import json
import logging
from datetime import date, datetime, time, timezone
from typing import Any, Awaitable, Callable

import typer

from sellersync.common.run_id import generate_run_id
from sellersync.common.sanitize import maskSecret
from sellersync.common.time import parse_timestamp
from sellersync.config import Settings, load_settings
from sellersync.domain.exceptions import RemoteError
from sellersync.domain.models import (
    DateRange,
    NotificationFilters,
    NotificationKind,
    Pagination,
    TransactionDirection,
    TransactionFilters,
    TransactionStatus,
)
from sellersync.infra.http.remote_client import HttpRemoteResourceClient
from sellersync.infra.logging.setup import closeLogger, createCommandLogger, logEvent
from sellersync.session import SyncSession, build_api_client

app = typer.Typer(no_args_is_help=True, add_completion=False)
notificationsApp = typer.Typer(no_args_is_help=True)
transactionsApp = typer.Typer(no_args_is_help=True)
app.add_typer(notificationsApp, name="notifications")
app.add_typer(transactionsApp, name="transactions")


def printRunHeader(runId: str, command: str, settings: Settings, sources: list[str]) -> None:
    """
    Назначение:
        Печатает безопасную сводку параметров запуска (без секретов).
    """
    typer.echo(
        f"run_id={runId} command={command} base_url={settings.base_url} "
        f"api_token={maskSecret(settings.api_token)} sources={sources} log_level={settings.log_level}"
    )


def requireApi(settings: Settings) -> None:
    """Проверяет наличие base_url; при отсутствии exit code 2."""
    if not settings.base_url:
        typer.echo("ERROR: missing API settings: base_url", err=True)
        raise typer.Exit(code=2)


def emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, default=str))


def buildSession(settings: Settings, logger: logging.Logger, runId: str) -> SyncSession:
    client = build_api_client(settings)
    remote = HttpRemoteResourceClient(client, logger=logger, run_id=runId)
    return SyncSession(settings, remote, logger=logger, run_id=runId, api_client=client)


def runCommand(ctx: typer.Context, commandName: str, action: Callable[[SyncSession], Awaitable[Any]]) -> None:
    """
    Назначение:
        Унифицированная обвязка выполнения команд:
        - создаёт логгер + файл лога
        - проверяет настройки API
        - открывает SyncSession и гарантированно закрывает её
        - маппит отказы удалённого клиента в exit code 1

    Поведение:
        - Отсутствие base_url: exit code 2.
        - RemoteError: сообщение в stderr и exit code 1.
    """
    runId = ctx.obj["runId"]
    settings: Settings = ctx.obj["settings"]

    logger, logFilePath = createCommandLogger(
        commandName=commandName,
        logDir=settings.log_dir,
        runId=runId,
        logLevel=settings.log_level,
    )
    exitCode = 0
    try:
        logEvent(logger, logging.INFO, runId, "core", f"Command started: {commandName}")
        try:
            requireApi(settings)
        except typer.Exit:
            logEvent(logger, logging.ERROR, runId, "config", "Missing API settings")
            exitCode = 2
            return

        async def execute() -> None:
            session = buildSession(settings, logger, runId)
            try:
                await action(session)
            finally:
                await session.close()

        try:
            asyncio.run(execute())
        except RemoteError as exc:
            logEvent(logger, logging.ERROR, runId, "api", f"{exc.code}: {exc.message}")
            typer.echo(f"ERROR: {exc.code}: {exc.message}", err=True)
            exitCode = 1
    finally:
        logEvent(logger, logging.INFO, runId, "core", f"Command finished exit_code={exitCode} log={logFilePath}")
        closeLogger(logger)
        if exitCode:
            raise typer.Exit(code=exitCode)


@app.callback()
def main(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "--config", help="Path to YAML config"),
    baseUrl: str | None = typer.Option(None, "--base-url"),
    apiToken: str | None = typer.Option(None, "--api-token"),
    logDir: str | None = typer.Option(None, "--log-dir"),
    logLevel: str | None = typer.Option(None, "--log-level"),
    timeoutSeconds: float | None = typer.Option(None, "--timeout-seconds"),
    retries: int | None = typer.Option(None, "--retries"),
    unreadRefreshSeconds: float | None = typer.Option(None, "--unread-refresh-seconds"),
) -> None:
    """Синхронизация уведомлений и транзакций панели продавца."""
    cli_overrides = {
        "base_url": baseUrl,
        "api_token": apiToken,
        "log_dir": logDir,
        "log_level": logLevel,
        "timeout_seconds": timeoutSeconds,
        "retries": retries,
        "unread_refresh_seconds": unreadRefreshSeconds,
    }
    try:
        loaded = load_settings(config, cli_overrides)
    except ValueError as exc:
        typer.echo(f"ERROR: invalid configuration: {exc}", err=True)
        raise typer.Exit(code=2)
    ctx.obj = {"runId": generate_run_id(), "settings": loaded.settings, "sources": loaded.sources_used}


@app.command("check-config")
def checkConfig(ctx: typer.Context) -> None:
    """Печатает итоговые настройки (токен маскируется)."""
    printRunHeader(ctx.obj["runId"], "check-config", ctx.obj["settings"], ctx.obj["sources"])


@notificationsApp.command("list")
def notificationsList(
    ctx: typer.Context,
    kind: NotificationKind | None = typer.Option(None, "--kind"),
    read: bool | None = typer.Option(None, "--read/--unread"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int | None = typer.Option(None, "--limit", min=1),
) -> None:
    settings: Settings = ctx.obj["settings"]

    async def action(session: SyncSession) -> None:
        result = await session.notifications.fetch_list(
            NotificationFilters(read=read, kind=kind),
            Pagination(page=page, limit=limit or settings.notifications_page_limit),
        )
        emit(result.to_dict())

    runCommand(ctx, "notifications list", action)


@notificationsApp.command("unread")
def notificationsUnread(ctx: typer.Context) -> None:
    async def action(session: SyncSession) -> None:
        aggregate = await session.notifications.fetch_unread_aggregate()
        emit({"unread": aggregate.count})

    runCommand(ctx, "notifications unread", action)


@notificationsApp.command("mark-read")
def notificationsMarkRead(ctx: typer.Context, notificationId: str = typer.Argument(...)) -> None:
    async def action(session: SyncSession) -> None:
        await session.notifications.mark_read(notificationId)
        emit({"id": notificationId, "read": True})

    runCommand(ctx, "notifications mark-read", action)


@notificationsApp.command("mark-all-read")
def notificationsMarkAllRead(ctx: typer.Context) -> None:
    async def action(session: SyncSession) -> None:
        await session.notifications.mark_all_read()
        emit({"unread": 0})

    runCommand(ctx, "notifications mark-all-read", action)


@notificationsApp.command("delete")
def notificationsDelete(ctx: typer.Context, notificationId: str = typer.Argument(...)) -> None:
    async def action(session: SyncSession) -> None:
        await session.notifications.delete(notificationId)
        emit({"id": notificationId, "deleted": True})

    runCommand(ctx, "notifications delete", action)


@notificationsApp.command("watch")
def notificationsWatch(
    ctx: typer.Context,
    cycles: int = typer.Option(3, "--cycles", min=1, help="Number of refreshes to print before exit"),
) -> None:
    """Печатает счётчик непрочитанных при каждом обновлении (интервал из настроек)."""

    async def action(session: SyncSession) -> None:
        done = asyncio.Event()
        seen = 0

        def on_change(state) -> None:
            nonlocal seen
            if state.is_fetching or state.data is None:
                return
            seen += 1
            emit({"unread": state.data.count, "stale": state.is_stale})
            if seen >= cycles:
                done.set()

        poller = session.unread_poller(on_change=on_change)
        poller.start()
        try:
            await done.wait()
        finally:
            await poller.aclose()

    runCommand(ctx, "notifications watch", action)


def _parseDate(value: str | None, endOfDay: bool = False) -> datetime | None:
    """
    Назначение:
        Разбор --start/--end. Дата без времени для --end означает конец
        этого дня (UTC), чтобы записи того же дня попадали в диапазон.
    """
    if value is None:
        return None
    text = value.strip()
    try:
        if endOfDay and len(text) == 10:
            return datetime.combine(date.fromisoformat(text), time.max, tzinfo=timezone.utc)
        return parse_timestamp(text)
    except ValueError:
        raise typer.BadParameter(f"Invalid ISO date: {value}")


@transactionsApp.command("list")
def transactionsList(
    ctx: typer.Context,
    direction: TransactionDirection | None = typer.Option(None, "--direction"),
    status: TransactionStatus | None = typer.Option(None, "--status"),
    start: str | None = typer.Option(None, "--start", help="ISO date/time"),
    end: str | None = typer.Option(None, "--end", help="ISO date/time"),
    search: str | None = typer.Option(None, "--search"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int | None = typer.Option(None, "--limit", min=1),
) -> None:
    startAt = _parseDate(start)
    endAt = _parseDate(end, endOfDay=True)
    dateRange = DateRange(start=startAt, end=endAt) if (startAt or endAt) else None
    filters = TransactionFilters(direction=direction, status=status, date_range=dateRange, search_term=search)

    async def action(session: SyncSession) -> None:
        result = await session.transactions.fetch_page(filters, page=page, limit=limit)
        emit(result.to_dict())

    runCommand(ctx, "transactions list", action)


@transactionsApp.command("show")
def transactionsShow(ctx: typer.Context, transactionId: str = typer.Argument(...)) -> None:
    async def action(session: SyncSession) -> None:
        record = await session.transactions.resolve_by_id(transactionId)
        emit(record.to_dict())

    runCommand(ctx, "transactions show", action)


if __name__ == "__main__":
    app()
