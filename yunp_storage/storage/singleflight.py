# storage/singleflight.py
import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable


class SingleFlight:
    """
    Deduplicates concurrent calls per key: while a call for a key is in
    flight, later callers await its result instead of starting their own.
    Entries are dropped as soon as the call settles.
    """

    def __init__(self):
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    async def do(self, key: Hashable, func: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(func())
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        # A caller being cancelled must not cancel the call the others wait on.
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)
