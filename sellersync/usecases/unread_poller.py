from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from sellersync.domain.models import UnreadAggregate
from sellersync.infra.logging.setup import logEvent
from sellersync.usecases.notification_sync import NotificationSyncEngine
from sellersync.usecases.observers import QueryObserver, QueryState


class UnreadAggregatePoller:
    """
    Назначение/ответственность:
        Политика свежести счётчика непрочитанных для потребителя, который
        его отображает.

    Контракт:
        - start(): подписка и немедленная загрузка.
        - Пока потребитель видим, счётчик перезагружается каждые
          interval_seconds.
        - set_visible(False) приостанавливает интервал; set_visible(True)
          сразу перезагружает счётчик и возобновляет интервал.
        - stop(): отписка; поздние результаты потребителю не доставляются.
        - aclose(): stop() и ожидание завершения отменённых задач интервала.
    """

    def __init__(
        self,
        engine: NotificationSyncEngine,
        interval_seconds: float = 30.0,
        on_change: Callable[[QueryState[UnreadAggregate]], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.engine = engine
        self.interval_seconds = interval_seconds
        self._on_change = on_change
        self._sleep = sleep
        self._observer: QueryObserver[UnreadAggregate] | None = None
        self._loop_task: asyncio.Task | None = None
        self._cancelled_tasks: list[asyncio.Task] = []
        self._visible = True
        self.refresh_count = 0

    @property
    def running(self) -> bool:
        return self._observer is not None

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def polling(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def state(self) -> QueryState[UnreadAggregate] | None:
        return self._observer.state if self._observer is not None else None

    def start(self) -> None:
        if self._observer is not None:
            return
        self._observer = self.engine.observe_unread(on_change=self._on_change)
        self._refresh_now("mount")
        if self._visible:
            self._start_loop()

    def stop(self) -> None:
        self._stop_loop()
        if self._observer is not None:
            self._observer.close()
            self._observer = None

    async def aclose(self) -> None:
        self.stop()
        pending, self._cancelled_tasks = self._cancelled_tasks, []
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def set_visible(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        if self._observer is None:
            return
        if visible:
            self._refresh_now("visible")
            self._start_loop()
        else:
            self._stop_loop()
            logEvent(self.engine.logger, logging.DEBUG, self.engine.run_id, "poller", "interval refresh suspended")

    def _refresh_now(self, reason: str) -> None:
        self.refresh_count += 1
        logEvent(self.engine.logger, logging.DEBUG, self.engine.run_id, "poller", f"unread refresh reason={reason}")
        self._observer.refetch()

    def _start_loop(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self._run())

    def _stop_loop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._cancelled_tasks = [task for task in self._cancelled_tasks if not task.done()]
            self._cancelled_tasks.append(self._loop_task)
            self._loop_task = None

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval_seconds)
            if self._observer is None or not self._visible:
                return
            self._refresh_now("interval")


__all__ = ["UnreadAggregatePoller"]
