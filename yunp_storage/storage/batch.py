# storage/batch.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..exceptions import PartialBatchFailure
from .dto import BatchResult, StorageItem


async def run_batch(
    operation: str,
    ids: List[str],
    func: Callable[[str], Awaitable[Any]],
    concurrency: int = 8,
    provider: Optional[str] = None,
) -> BatchResult:
    """
    Applies `func` to every id with at most `concurrency` calls in flight and
    waits for all of them to settle.

    :param operation: Name used in logs and in the failure message.
    :param ids: Item ids, processed independently of each other.
    :param func: Per-item coroutine; a returned StorageItem is collected.
    :return: The result when every item succeeded.
    :raises PartialBatchFailure: when at least one item failed.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_one(item_id: str):
        async with semaphore:
            try:
                return True, await func(item_id)
            except Exception as e:
                logging.warning(f"Batch {operation}: item '{item_id}' failed: {e}")
                return False, e

    outcomes = await asyncio.gather(*(run_one(item_id) for item_id in ids))

    succeeded: List[str] = []
    items: List[StorageItem] = []
    failures: Dict[str, BaseException] = {}
    for item_id, (ok, value) in zip(ids, outcomes):
        if ok:
            succeeded.append(item_id)
            if isinstance(value, StorageItem):
                items.append(value)
        else:
            failures[item_id] = value

    logging.info(f"Batch {operation}: {len(succeeded)} succeeded, {len(failures)} failed.")
    if failures:
        raise PartialBatchFailure(operation, succeeded, failures, items, provider=provider)
    return BatchResult(succeeded=succeeded, items=items)
