"""
Guarded lazy initialization for process-wide async work.

``AsyncOnce`` holds a single in-flight future. The first caller schedules
the work; every concurrent or later caller awaits that same future and
observes the same outcome, including failure. The outcome is never reset.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class AsyncOnce(Generic[T]):
    """
    Run an async factory at most once and share its outcome.

    Callers are shielded from each other: cancelling one awaiting caller
    does not cancel the shared work.
    """

    def __init__(self, factory: Callable[[], Awaitable[T]], *, name: str) -> None:
        self._factory = factory
        self._name = name
        self._task: Optional[asyncio.Future[T]] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def get(self) -> T:
        if self._task is None:
            self._task = asyncio.ensure_future(self._factory())
            self._task.add_done_callback(_consume_exception)

        if self._task.done():
            return self._task.result()

        return await asyncio.shield(self._task)


def _consume_exception(future: asyncio.Future) -> None:
    # Marks the exception as retrieved so an unobserved failure is not
    # reported as "never retrieved" by the event loop.
    if not future.cancelled():
        future.exception()
