# tests/test_chunked.py
import asyncio

import pytest

from yunp_storage.exceptions import TransientError
from yunp_storage.storage.chunked import ChunkedUploader, ChunkProtocol, UploadState, split_chunks
from yunp_storage.storage.dto import ProviderKind, StorageItem


class RecordingProtocol(ChunkProtocol):
    """Keeps staged chunks apart from committed objects, like a real backend."""

    def __init__(self, concurrent=False, fail_at=None, block_at=None, fail_abort=False):
        self.concurrent = concurrent
        self.fail_at = fail_at
        self.block_at = block_at
        self.fail_abort = fail_abort
        self.staged = {}
        self.committed = {}
        self.aborted = []
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.blocked = asyncio.Event()

    async def open(self):
        self.calls.append("open")
        return "session-1"

    async def append(self, session_id, index, offset, chunk):
        self.calls.append(("append", index, offset))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if index == self.block_at:
                self.blocked.set()
                await asyncio.sleep(3600)
            if index == self.fail_at:
                raise TransientError(f"chunk {index} failed")
            self.staged[index] = chunk
            return f"token-{index}"
        finally:
            self.in_flight -= 1

    async def commit(self, session_id, parts, total_size):
        self.calls.append("commit")
        data = b"".join(self.staged[int(p.split("-")[1])] for p in parts)
        assert len(data) == total_size
        self.committed["dest"] = data
        return StorageItem(id="dest", name="dest", size=len(data), path="/dest")

    async def abort(self, session_id):
        self.calls.append("abort")
        self.aborted.append(session_id)
        self.staged.clear()
        if self.fail_abort:
            raise TransientError("abort failed")


def uploader(protocol, chunk_size=4, max_concurrency=1):
    return ChunkedUploader(protocol, ProviderKind.S3, "dest", chunk_size, max_concurrency=max_concurrency)


def test_split_chunks_keeps_offsets_and_tail():
    assert split_chunks(b"abcdefghij", 4) == [(0, 0, b"abcd"), (1, 4, b"efgh"), (2, 8, b"ij")]
    assert split_chunks(b"", 4) == []


@pytest.mark.asyncio
async def test_upload_commits_parts_in_order():
    protocol = RecordingProtocol()
    up = uploader(protocol)

    item = await up.upload(b"abcdefghij")

    assert item.size == 10
    assert protocol.committed["dest"] == b"abcdefghij"
    assert protocol.calls == ["open", ("append", 0, 0), ("append", 1, 4), ("append", 2, 8), "commit"]
    assert up.state == UploadState.COMMITTED
    assert up.session.bytes_sent == 10
    assert up.session.committed


@pytest.mark.asyncio
async def test_failure_after_a_chunk_aborts_and_commits_nothing():
    protocol = RecordingProtocol(fail_at=1)
    up = uploader(protocol)

    with pytest.raises(TransientError):
        await up.upload(b"abcdefghij")

    assert up.state == UploadState.ABORTED
    assert protocol.aborted == ["session-1"]
    assert protocol.committed == {}
    assert "commit" not in protocol.calls


@pytest.mark.asyncio
async def test_failed_abort_does_not_mask_the_upload_error():
    protocol = RecordingProtocol(fail_at=0, fail_abort=True)

    with pytest.raises(TransientError, match="chunk 0 failed"):
        await uploader(protocol).upload(b"abcdefgh")


@pytest.mark.asyncio
async def test_cancellation_between_chunks_aborts_the_session():
    protocol = RecordingProtocol(block_at=1)
    up = uploader(protocol)

    task = asyncio.ensure_future(up.upload(b"abcdefghij"))
    await protocol.blocked.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert up.state == UploadState.ABORTED
    assert protocol.aborted == ["session-1"]
    assert protocol.committed == {}


@pytest.mark.asyncio
async def test_session_cannot_be_reused():
    up = uploader(RecordingProtocol())
    await up.upload(b"abcd")

    with pytest.raises(RuntimeError):
        await up.upload(b"abcd")


@pytest.mark.asyncio
async def test_concurrent_protocol_respects_the_limit():
    protocol = RecordingProtocol(concurrent=True)
    up = uploader(protocol, chunk_size=2, max_concurrency=3)

    await up.upload(b"x" * 20)

    assert protocol.committed["dest"] == b"x" * 20
    assert 1 < protocol.max_in_flight <= 3


@pytest.mark.asyncio
async def test_sequential_protocol_ignores_concurrency_setting():
    protocol = RecordingProtocol(concurrent=False)
    up = uploader(protocol, chunk_size=2, max_concurrency=4)

    await up.upload(b"x" * 10)

    assert up.max_concurrency == 1
    assert protocol.max_in_flight == 1


@pytest.mark.asyncio
async def test_concurrent_failure_aborts_once():
    protocol = RecordingProtocol(concurrent=True, fail_at=2)
    up = uploader(protocol, chunk_size=2, max_concurrency=3)

    with pytest.raises(TransientError):
        await up.upload(b"x" * 20)

    assert protocol.aborted == ["session-1"]
    assert protocol.committed == {}
