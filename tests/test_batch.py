# tests/test_batch.py
import asyncio

import pytest

from yunp_storage.exceptions import NotFoundError, PartialBatchFailure
from yunp_storage.storage.batch import run_batch
from yunp_storage.storage.dto import StorageItem


def item(item_id):
    return StorageItem(id=item_id, name=item_id, path=f"/{item_id}")


@pytest.mark.asyncio
async def test_all_items_succeed():
    async def copy(item_id):
        return item(f"copy-of-{item_id}")

    result = await run_batch("copy", ["a", "b", "c"], copy)

    assert result.succeeded == ["a", "b", "c"]
    assert [i.id for i in result.items] == ["copy-of-a", "copy-of-b", "copy-of-c"]


@pytest.mark.asyncio
async def test_one_failure_reports_every_other_success():
    async def delete(item_id):
        if item_id == "b":
            raise NotFoundError(f"'{item_id}' does not exist")

    with pytest.raises(PartialBatchFailure) as exc_info:
        await run_batch("delete", ["a", "b", "c", "d"], delete, provider="local")

    error = exc_info.value
    assert error.succeeded == ["a", "c", "d"]
    assert error.failed_ids == ["b"]
    assert error.reasons() == {"b": "'b' does not exist"}
    assert isinstance(error.failures["b"], NotFoundError)
    assert error.provider == "local"
    assert "1 of 4" in str(error)


@pytest.mark.asyncio
async def test_all_items_fail():
    async def delete(item_id):
        raise RuntimeError("boom")

    with pytest.raises(PartialBatchFailure) as exc_info:
        await run_batch("delete", ["a", "b"], delete)

    assert exc_info.value.succeeded == []
    assert exc_info.value.failed_ids == ["a", "b"]


@pytest.mark.asyncio
async def test_partial_failure_keeps_successful_results():
    async def copy(item_id):
        if item_id == "x":
            raise RuntimeError("boom")
        return item(f"copy-of-{item_id}")

    with pytest.raises(PartialBatchFailure) as exc_info:
        await run_batch("copy", ["x", "y"], copy)

    assert [i.id for i in exc_info.value.results] == ["copy-of-y"]


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    in_flight = 0
    peak = 0

    async def slow(item_id):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1

    result = await run_batch("delete", [str(i) for i in range(10)], slow, concurrency=2)

    assert len(result.succeeded) == 10
    assert peak == 2


@pytest.mark.asyncio
async def test_empty_batch():
    async def never(item_id):
        raise AssertionError("not called")

    result = await run_batch("delete", [], never)

    assert result.succeeded == []
    assert result.items == []
