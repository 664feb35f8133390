"""
Base class for pipeline stages.

A stage owns the asyncio tasks it spawns. It is started by its call session,
reports fatal errors back through `on_fatal`, and is stopped exactly once.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set

import structlog

from src.voicebot.channel import ShutdownSignal
from src.voicebot.errors import ResourceError

logger = structlog.get_logger(__name__)

FatalCallback = Callable[[str, BaseException], None]


class PipelineStage:
    """Started unit of concurrent work with a cancellation control."""

    name: str = "stage"

    def __init__(
        self,
        signal: ShutdownSignal,
        on_fatal: Optional[FatalCallback] = None,
    ):
        self._signal = signal
        self._on_fatal = on_fatal
        self._tasks: Set[asyncio.Task] = set()
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{self.name}:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _spawn_loop(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        """Spawn a long-running loop whose unexpected failure is fatal to the stage."""
        return self._spawn(self._supervise(coro, name=name), name=name)

    async def _supervise(self, coro: Awaitable[Any], *, name: str) -> None:
        try:
            await coro
        except ResourceError as e:
            # Closed channel or fired shutdown signal: normal way out.
            logger.debug("Stage loop exiting", stage=self.name, loop=name, reason=str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fatal(e)

    def _fatal(self, error: BaseException) -> None:
        if self._stopped or self._signal.fired:
            logger.debug(
                "Ignoring stage error during shutdown",
                stage=self.name,
                error_type=type(error).__name__,
                error=str(error),
            )
            return
        logger.error(
            "Stage failed",
            stage=self.name,
            error_type=type(error).__name__,
            error=str(error),
        )
        if self._on_fatal:
            self._on_fatal(self.name, error)

    async def _close_resources(self) -> None:
        """Close provider connections so blocked I/O fails fast."""
        return None

    async def stop(self) -> None:
        """Cancel all tasks and release resources. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True

        current = asyncio.current_task()
        pending: List[asyncio.Task] = [
            t for t in self._tasks if t is not current and not t.done()
        ]
        for task in pending:
            task.cancel()

        try:
            await self._close_resources()
        except Exception as e:
            logger.warning("Error closing stage resources", stage=self.name, error=str(e))

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Stage stopped", stage=self.name)

    async def wait(self) -> None:
        """Wait for every task of this stage to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
