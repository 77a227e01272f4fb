"""
Lazy, single-flight initialisation of an expensive resource.

The first caller runs the factory (in a worker thread); callers arriving
while it runs wait for the same attempt instead of starting another. A
successful result is cached for the lifetime of the holder. A failure is
re-raised to every waiter and leaves the holder FAILED, and the next call
starts a fresh attempt, so a transient error never sticks.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

LOG = logging.getLogger("rag.lifecycle")

T = TypeVar("T")


class InitState(str, Enum):
    """Lifecycle of a LazyResource."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    FAILED = "failed"


class LazyResource(Generic[T]):
    """Holds a value produced once by ``factory`` on first request."""

    def __init__(self, factory: Callable[[], T], name: str = "resource") -> None:
        self._factory = factory
        self._name = name
        self._state = InitState.NOT_STARTED
        self._value: Optional[T] = None
        self._pending: Optional[asyncio.Future] = None
        self._last_error: Optional[BaseException] = None

    @property
    def state(self) -> InitState:
        return self._state

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    def peek(self) -> Optional[T]:
        """The value if READY, else None. Never starts initialisation."""
        return self._value if self._state is InitState.READY else None

    async def get(self) -> T:
        if self._state is InitState.READY:
            return self._value  # type: ignore[return-value]

        if self._state is InitState.IN_PROGRESS and self._pending is not None:
            # Shield so a cancelled waiter doesn't cancel the shared attempt
            return await asyncio.shield(self._pending)

        # NOT_STARTED or FAILED: start a new attempt
        pending = asyncio.get_running_loop().create_future()
        self._pending = pending
        self._state = InitState.IN_PROGRESS
        LOG.debug("Initialising %s", self._name)

        try:
            value = await asyncio.to_thread(self._factory)
        except BaseException as exc:
            self._state = InitState.FAILED
            self._last_error = exc
            self._pending = None
            if isinstance(exc, Exception):
                pending.set_exception(exc)
                # Mark retrieved; waiters (if any) still receive it
                pending.exception()
            else:
                pending.cancel()
            LOG.warning("Initialising %s failed: %s", self._name, exc)
            raise

        self._value = value
        self._state = InitState.READY
        self._last_error = None
        self._pending = None
        pending.set_result(value)
        return value

    def reset(self) -> Optional[T]:
        """Forget the cached value (for explicit teardown) and return it."""
        value = self.peek()
        self._value = None
        self._state = InitState.NOT_STARTED
        self._pending = None
        return value
