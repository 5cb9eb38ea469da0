"""
Lazy Initialization
===================
Compute-once cell shared by concurrent coroutines.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class AsyncOnce(Generic[T]):
    """
    Holds a value computed by the first caller of ``get``.

    Callers arriving while the computation is in flight wait for it instead
    of starting their own. A failed or cancelled computation leaves the cell
    empty, so the next caller tries again.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._value: Optional[T] = None
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def peek(self) -> Optional[T]:
        """Return the cached value without computing it."""
        return self._value

    async def get(self, factory: Callable[[], Awaitable[T]]) -> T:
        if self._done:
            return self._value  # type: ignore[return-value]

        async with self._lock:
            if not self._done:
                self._value = await factory()
                self._done = True
        return self._value  # type: ignore[return-value]
