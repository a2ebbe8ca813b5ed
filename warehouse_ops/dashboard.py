"""KPI dashboard consumer.

A dashboard owns one refresh coordinator and re-runs its loader whenever the
coordinator fires. Results are applied only while their generation is still
current, so an older fetch that finishes late never overwrites a newer one and
nothing is applied after ``close()``. A failed fetch notifies and leaves the
last good state in place; there are no automatic retries.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from warehouse_ops import kpis
from warehouse_ops.config import local_today
from warehouse_ops.errors import WarehouseError
from warehouse_ops.notifications import Notifier
from warehouse_ops.realtime import ChangeFeed, Generation, RefreshCoordinator

logger = logging.getLogger(__name__)

Loader = Callable[[Session, date], Any]

UNEXPECTED_ERROR = "Unexpected error while loading data"


@dataclass
class DashboardContext:
    session_factory: Callable[[], Session]
    feed: ChangeFeed
    notifier: Notifier
    clock: Callable[[], date] = local_today


def all_staff_loader(period_days: int) -> Loader:
    def load(db: Session, today: date) -> kpis.AllStaffKPISummary:
        return kpis.fetch_all_staff_summary(db, period_days, today)

    return load


def user_loader(user_id: str, period_days: int) -> Loader:
    def load(db: Session, today: date) -> kpis.SingleUserKPISummary:
        return kpis.fetch_user_summary(db, user_id, period_days, today)

    return load


class KPIDashboard:
    def __init__(
        self,
        context: DashboardContext,
        loader: Loader,
        error_title: str = "Error fetching KPI data",
    ) -> None:
        self.context = context
        self.loader = loader
        self.error_title = error_title
        self.data: Any = None
        self.loading = False
        self.last_error: Optional[str] = None
        self.generation = Generation()
        self.coordinator: Optional[RefreshCoordinator] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: set[asyncio.Task] = set()

    def _load(self) -> Any:
        db = self.context.session_factory()
        try:
            return self.loader(db, self.context.clock())
        finally:
            db.close()

    async def refresh(self) -> bool:
        """Fetch once; returns True when the result was applied."""
        token = self.generation.begin()
        self.loading = True
        try:
            result = await asyncio.to_thread(self._load)
        except WarehouseError as exc:
            if self.generation.is_current(token):
                self.loading = False
                self.last_error = exc.message
                self.context.notifier.error(self.error_title, exc.message)
            return False
        except Exception:
            logger.exception("KPI loader failed (generation %d)", token)
            if self.generation.is_current(token):
                self.loading = False
                self.last_error = UNEXPECTED_ERROR
                self.context.notifier.error(self.error_title, UNEXPECTED_ERROR)
            return False
        if not self.generation.is_current(token):
            logger.debug("Discarding superseded KPI result (generation %d)", token)
            return False
        self.data = result
        self.last_error = None
        self.loading = False
        return True

    def _schedule(self, refresh_count: int) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._start_refresh)

    def _start_refresh(self) -> None:
        if self.generation.closed:
            return
        task = asyncio.ensure_future(self.refresh())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def open(self) -> "KPIDashboard":
        self._loop = asyncio.get_running_loop()
        self.coordinator = RefreshCoordinator(self.context.feed)
        self.coordinator.add_listener(self._schedule)
        self.coordinator.open()
        await self.refresh()
        return self

    async def close(self) -> None:
        self.generation.close()
        if self.coordinator is not None:
            self.coordinator.remove_listener(self._schedule)
            self.coordinator.close()
            self.coordinator = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self.loading = False

    async def __aenter__(self) -> "KPIDashboard":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
