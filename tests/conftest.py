"""Shared pytest fixtures for all tests."""

import asyncio
from typing import Dict, List

import pytest
import pytest_asyncio

from engine.chunk_cache import ChunkCache
from engine.chunk_mapper import ChunkMapper
from engine.directory_index import DirectoryIndex
from engine.file_store import FileStore
from engine.filesystem import FileCollageFS
from remote.client import QueuedRemoteClient
from remote.retry import RetryPolicy
from remote.transports.base import BlobTransport

CHUNK_SIZE = 10

FAST_RETRY = RetryPolicy(max_attempts=3, backoff_seconds=0, max_backoff_seconds=0)


class MemoryTransport(BlobTransport):
    """
    In-memory blob store.

    Counts attempts, records the order of downloads, raises queued failures
    one per attempt, and blocks every transfer while `gate` is cleared.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        self.chunk_size = chunk_size
        self.blobs: Dict[str, bytes] = {}
        self.uploads = 0
        self.downloads = 0
        self.download_log: List[str] = []
        self.upload_failures: List[Exception] = []
        self.download_failures: List[Exception] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.closed = False
        self._next_id = 0

    def put(self, payload: bytes) -> str:
        """Store a blob directly, bypassing counters."""
        self._next_id += 1
        blob_id = f"blob-{self._next_id}"
        self.blobs[blob_id] = bytes(payload)
        return blob_id

    async def upload_blob(self, name: str, payload: bytes) -> str:
        self.uploads += 1
        await self.gate.wait()
        if self.upload_failures:
            raise self.upload_failures.pop(0)
        return self.put(payload)

    async def download_blob(self, blob_id: str) -> bytes:
        self.downloads += 1
        self.download_log.append(blob_id)
        await self.gate.wait()
        if self.download_failures:
            raise self.download_failures.pop(0)
        return self.blobs[blob_id]

    def max_blob_size(self) -> int:
        return self.chunk_size

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def transport():
    return MemoryTransport()


@pytest_asyncio.fixture
async def remote_client(transport):
    client = QueuedRemoteClient(
        transport,
        download_workers=2,
        upload_workers=2,
        download_retry=FAST_RETRY,
        upload_retry=FAST_RETRY
    )
    yield client
    transport.gate.set()
    await client.close()


@pytest_asyncio.fixture
async def cache(remote_client):
    chunk_cache = ChunkCache(remote_client, soft_limit=50, hard_limit=200, simultaneous_evictions=5)
    yield chunk_cache
    await chunk_cache.close()


@pytest.fixture
def file_store(cache):
    return FileStore(cache, ChunkMapper(CHUNK_SIZE), prefetch_depth=2)


@pytest.fixture
def index():
    return DirectoryIndex()


@pytest.fixture
def fs(index, file_store):
    return FileCollageFS(index, file_store)


@pytest.fixture
def wait_until():
    """Poll a condition on the event loop until it holds or a timeout expires."""
    async def _wait_until(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(0.005)
    return _wait_until
