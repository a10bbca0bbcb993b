# storage/chunked.py
from abc import ABC, abstractmethod
import asyncio
from enum import Enum
import logging
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel

from .dto import ProviderKind, StorageItem


class UploadState(str, Enum):
    NOT_STARTED = "not_started"
    SESSION_OPEN = "session_open"
    APPENDING = "appending"
    COMMITTED = "committed"
    ABORTED = "aborted"


class UploadSession(BaseModel):
    """In-flight state of one chunked upload. Never persisted or returned to callers."""

    session_id: Optional[str] = None
    provider_kind: ProviderKind
    destination_id: str
    chunk_size: int
    total_size: int
    bytes_sent: int = 0
    committed: bool = False
    state: UploadState = UploadState.NOT_STARTED


class ChunkProtocol(ABC):
    """
    Backend glue for the chunked upload state machine. One instance serves
    exactly one upload.
    """

    # Backends that accept parts out of order (S3 part numbers) may append concurrently.
    concurrent: bool = False

    @abstractmethod
    async def open(self) -> str:
        """Opens the server-side session and returns its id."""
        pass

    @abstractmethod
    async def append(self, session_id: str, index: int, offset: int, chunk: bytes) -> Any:
        """Uploads one chunk and returns the token the commit needs for it (ETag, block id...)."""
        pass

    @abstractmethod
    async def commit(self, session_id: str, parts: List[Any], total_size: int) -> StorageItem:
        """Finalizes the upload with the ordered part tokens. Only now is the object visible."""
        pass

    @abstractmethod
    async def abort(self, session_id: Optional[str]) -> None:
        """Releases server-side resources of an unfinished session."""
        pass


def split_chunks(data: bytes, chunk_size: int) -> List[Tuple[int, int, bytes]]:
    """Returns (index, offset, chunk) for every fixed-size chunk of the payload."""
    return [
        (index, offset, data[offset:offset + chunk_size])
        for index, offset in enumerate(range(0, len(data), chunk_size))
    ]


class ChunkedUploader:
    """
    Drives NOT_STARTED -> SESSION_OPEN -> APPENDING* -> COMMITTED. Any failure,
    including cancellation of the calling task between chunks, moves the
    session to ABORTED after a best-effort abort, and the error propagates.
    """

    def __init__(
        self,
        protocol: ChunkProtocol,
        provider_kind: ProviderKind,
        destination_id: str,
        chunk_size: int,
        max_concurrency: int = 1,
    ):
        self.protocol = protocol
        self.chunk_size = chunk_size
        self.max_concurrency = max_concurrency if protocol.concurrent else 1
        self.session = UploadSession(
            provider_kind=provider_kind,
            destination_id=destination_id,
            chunk_size=chunk_size,
            total_size=0,
        )

    @property
    def state(self) -> UploadState:
        return self.session.state

    async def upload(self, data: bytes) -> StorageItem:
        session = self.session
        if session.state != UploadState.NOT_STARTED:
            raise RuntimeError(f"Upload session already used (state: {session.state.value})")
        session.total_size = len(data)

        try:
            session.session_id = await self.protocol.open()
            session.state = UploadState.SESSION_OPEN
            logging.info(
                f"Opened {session.provider_kind.value} upload session for '{session.destination_id}' "
                f"({session.total_size} bytes, {self.chunk_size} byte chunks)"
            )

            chunks = split_chunks(data, self.chunk_size)
            if self.max_concurrency > 1:
                parts = await self._append_concurrently(chunks)
            else:
                parts = []
                for index, offset, chunk in chunks:
                    parts.append(await self._append(index, offset, chunk))

            item = await self.protocol.commit(session.session_id, parts, session.total_size)
        except BaseException as e:
            await self._abort(e)
            raise

        session.committed = True
        session.state = UploadState.COMMITTED
        logging.info(f"Committed {session.provider_kind.value} upload of '{session.destination_id}'")
        return item

    async def _append(self, index: int, offset: int, chunk: bytes) -> Any:
        token = await self.protocol.append(self.session.session_id, index, offset, chunk)
        self.session.bytes_sent += len(chunk)
        self.session.state = UploadState.APPENDING
        return token

    async def _append_concurrently(self, chunks: List[Tuple[int, int, bytes]]) -> List[Any]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def append_one(index: int, offset: int, chunk: bytes) -> Any:
            async with semaphore:
                return await self._append(index, offset, chunk)

        tasks = [asyncio.ensure_future(append_one(*c)) for c in chunks]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _abort(self, error: BaseException) -> None:
        session = self.session
        previous = session.state
        session.state = UploadState.ABORTED
        if previous == UploadState.NOT_STARTED:
            return
        logging.warning(
            f"Aborting {session.provider_kind.value} upload of '{session.destination_id}' "
            f"after {session.bytes_sent} bytes: {error!r}"
        )
        try:
            await self.protocol.abort(session.session_id)
        except Exception as e:
            logging.warning(f"Could not release upload session {session.session_id}: {e}")
