"""Per-unit serialization for every write that touches a unit's calendar.

Two layers: an in-process ``asyncio.Lock`` keyed by unit id, and a row lock on
``rentable_units`` (``SELECT ... FOR UPDATE``) so separate processes sharing a
PostgreSQL database serialize too. SQLite ignores ``FOR UPDATE``; there the
in-process lock is the only guard.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.domain.errors import NotFoundError
from booking_engine.domain.units.db_models import RentableUnit

logger = logging.getLogger(__name__)


class UnitLockRegistry:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    def _bind_loop(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._loop = loop
            self._locks.clear()
            self._users.clear()

    @asynccontextmanager
    async def hold(self, unit_id: str) -> AsyncIterator[None]:
        self._bind_loop()
        lock = self._locks.setdefault(unit_id, asyncio.Lock())
        self._users[unit_id] = self._users.get(unit_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users.get(unit_id, 1) - 1
            if remaining <= 0:
                self._users.pop(unit_id, None)
                self._locks.pop(unit_id, None)
            else:
                self._users[unit_id] = remaining

    def is_locked(self, unit_id: str) -> bool:
        lock = self._locks.get(unit_id)
        return bool(lock and lock.locked())


unit_locks = UnitLockRegistry()


async def lock_unit_row(session: AsyncSession, unit_id: str) -> RentableUnit:
    stmt = select(RentableUnit).where(RentableUnit.unit_id == unit_id).with_for_update()
    unit = (await session.execute(stmt)).scalar_one_or_none()
    if unit is None:
        raise NotFoundError(detail="Unit not found")
    return unit


@asynccontextmanager
async def unit_guard(session: AsyncSession, unit_id: str) -> AsyncIterator[RentableUnit]:
    """Hold the unit's lock for one unit of work.

    Commits when the block exits normally and rolls back when it raises, so
    the row lock is released together with the in-process lock. Work that must
    survive a raised error is committed explicitly inside the block first.
    """
    async with unit_locks.hold(unit_id):
        try:
            unit = await lock_unit_row(session, unit_id)
            yield unit
        except BaseException:
            await session.rollback()
            raise
        if session.in_transaction():
            await session.commit()
