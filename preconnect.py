"""Standby connection kept warm so a start needs no connect round-trip."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from interfaces import Connection

logger = logging.getLogger(__name__)

ConnectionOpener = Callable[[], Awaitable[Connection]]


class PreconnectPool:
    """Holds at most one ready standby connection.

    ``take`` transfers ownership to the caller; the pool forgets the
    connection before returning it.
    """

    def __init__(self, open_connection: ConnectionOpener) -> None:
        self._open_connection = open_connection
        self._standby: Optional[Connection] = None
        self._warming: Optional[asyncio.Task] = None
        self.last_error: Optional[BaseException] = None

    @property
    def has_standby(self) -> bool:
        return self._standby is not None

    @property
    def is_warming(self) -> bool:
        return self._warming is not None and not self._warming.done()

    def _is_usable(self, connection: Optional[Connection]) -> bool:
        return connection is not None and bool(connection.ready) and bool(connection.is_open)

    async def warm(self) -> None:
        if self._is_usable(self._standby):
            logger.debug("Pre-connection already established")
            return
        if self.is_warming:
            await self._await_warming(self._warming)
            return
        if self._standby is not None:
            await self._close_standby()

        task = asyncio.create_task(self._warm_once())
        self._warming = task
        try:
            await self._await_warming(task)
        finally:
            if self._warming is task and task.done():
                self._warming = None

    async def _await_warming(self, task: asyncio.Task) -> None:
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # A discard cancelled the warm-up; only re-raise our own cancellation.
            if not task.cancelled():
                raise

    async def _warm_once(self) -> None:
        logger.info("Pre-connecting...")
        try:
            connection = await self._open_connection()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.last_error = exc
            logger.warning("Pre-connection failed: %s", exc)
            return
        self.last_error = None
        self._standby = connection
        logger.info("Pre-connection ready")

    def take(self) -> Optional[Connection]:
        standby = self._standby
        if standby is None:
            return None
        if not self._is_usable(standby):
            logger.info("Standby connection is stale, not promoting it")
            return None
        self._standby = None
        return standby

    def schedule_warm(
        self,
        delay_s: float = 0.0,
        condition: Optional[Callable[[], bool]] = None,
    ) -> asyncio.Task:
        """Warm in the background after ``delay_s``.

        ``condition`` is checked once the delay has passed; the warm is
        skipped when it returns False.
        """

        async def _delayed() -> None:
            if delay_s > 0:
                await asyncio.sleep(delay_s)
            if condition is not None and not condition():
                logger.debug("Scheduled warm skipped")
                return
            await self.warm()

        return asyncio.create_task(_delayed())

    async def discard(self) -> None:
        warming, self._warming = self._warming, None
        if warming is not None and not warming.done():
            warming.cancel()
            try:
                await warming
            except asyncio.CancelledError:
                pass
        await self._close_standby()

    async def _close_standby(self) -> None:
        standby, self._standby = self._standby, None
        if standby is None:
            return
        try:
            await standby.close()
        except Exception:
            logger.exception("Failed to close standby connection")
