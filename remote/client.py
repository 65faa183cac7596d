"""Remote blob client: priority queues and worker pools in front of a transport."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from common.types import Priority
from engine.models import FileChunk
from remote.retry import RetryPolicy, run_with_retries
from remote.transports.base import BlobTransport

logger = logging.getLogger(__name__)


class RemoteClient(ABC):
    """Upload and download chunk payloads."""

    @abstractmethod
    async def download(self, chunk: FileChunk, priority: Priority) -> bytes:
        """Fetch the bytes behind chunk.remote_blob_id."""

    @abstractmethod
    async def upload(self, chunk: FileChunk, payload: bytes) -> str:
        """Store a chunk payload and return its new remote blob id."""

    @abstractmethod
    def max_chunk_size(self) -> int:
        """Fixed chunk capacity of the backend."""

    async def close(self) -> None:
        pass


@dataclass
class _DownloadRequest:
    chunk: FileChunk
    blob_id: str
    future: asyncio.Future


@dataclass
class _UploadRequest:
    chunk: FileChunk
    payload: bytes
    future: asyncio.Future


class QueuedRemoteClient(RemoteClient):
    """
    Remote client with bounded concurrency per direction.

    Downloads wait in one FIFO per priority; each download worker serves the
    highest non-empty priority first. Uploads share a single FIFO. Workers
    are started on first use and run each request under the retry policy.
    A request whose caller stopped waiting before a worker picked it up is
    skipped; once picked up it runs to completion.
    """

    def __init__(
        self,
        transport: BlobTransport,
        download_workers: int = 3,
        upload_workers: int = 2,
        download_retry: Optional[RetryPolicy] = None,
        upload_retry: Optional[RetryPolicy] = None
    ):
        """
        Initialize client.

        Args:
            transport: Store that performs single attempts
            download_workers: Number of concurrent downloads
            upload_workers: Number of concurrent uploads
            download_retry: Retry policy for downloads
            upload_retry: Retry policy for uploads
        """
        if download_workers < 1 or upload_workers < 1:
            raise ValueError("Worker counts must be at least 1")
        self.transport = transport
        self.download_workers = download_workers
        self.upload_workers = upload_workers
        self.download_retry = download_retry or RetryPolicy()
        self.upload_retry = upload_retry or RetryPolicy()

        self._download_queues: Dict[Priority, Deque[_DownloadRequest]] = {
            priority: deque() for priority in Priority
        }
        self._download_signal: Optional[asyncio.Queue] = None
        self._upload_queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    def _ensure_workers(self) -> None:
        """Ensure worker tasks are running on the current event loop."""
        if self._workers:
            return
        self._download_signal = asyncio.Queue()
        self._upload_queue = asyncio.Queue()
        for worker_id in range(1, self.download_workers + 1):
            self._workers.append(asyncio.create_task(self._download_worker(worker_id)))
        for worker_id in range(1, self.upload_workers + 1):
            self._workers.append(asyncio.create_task(self._upload_worker(worker_id)))
        logger.info(
            f"Started {self.download_workers} download and {self.upload_workers} upload workers"
        )

    async def close(self) -> None:
        """Stop workers, fail queued requests and close the transport."""
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        for queue in self._download_queues.values():
            while queue:
                request = queue.popleft()
                if not request.future.done():
                    request.future.cancel()
        if self._upload_queue is not None:
            while not self._upload_queue.empty():
                request = self._upload_queue.get_nowait()
                if not request.future.done():
                    request.future.cancel()

        await self.transport.close()
        logger.info("Remote client closed")

    def max_chunk_size(self) -> int:
        return self.transport.max_blob_size()

    def pending_downloads(self) -> Dict[Priority, int]:
        return {priority: len(queue) for priority, queue in self._download_queues.items()}

    async def download(self, chunk: FileChunk, priority: Priority = Priority.HIGH) -> bytes:
        """
        Queue a download and wait for its result.

        Raises:
            ValueError: If the chunk was never uploaded
            RetriesExhaustedError: If every attempt failed transiently
            FatalTransportError: On a non-retriable failure
        """
        if chunk.remote_blob_id is None:
            raise ValueError(f"Chunk {chunk.id} has no remote copy to download")
        self._ensure_workers()
        future = asyncio.get_running_loop().create_future()
        self._download_queues[priority].append(_DownloadRequest(chunk, chunk.remote_blob_id, future))
        self._download_signal.put_nowait(None)
        return await future

    async def upload(self, chunk: FileChunk, payload: bytes) -> str:
        """
        Queue an upload and wait for the new blob id.

        The payload must already be a snapshot; it is not copied again.
        """
        self._ensure_workers()
        future = asyncio.get_running_loop().create_future()
        self._upload_queue.put_nowait(_UploadRequest(chunk, payload, future))
        return await future

    def _next_download(self) -> Optional[_DownloadRequest]:
        for priority in Priority:
            queue = self._download_queues[priority]
            if queue:
                return queue.popleft()
        return None

    async def _download_worker(self, worker_id: int) -> None:
        while True:
            await self._download_signal.get()
            request = self._next_download()
            if request is None or request.future.done():
                continue
            logger.info(f"Downloading {request.chunk.id} ({worker_id})")
            try:
                data = await run_with_retries(
                    lambda: self.transport.download_blob(request.blob_id),
                    self.download_retry,
                    f"download chunk {request.chunk.id}"
                )
            except Exception as e:
                logger.error(f"Download of chunk {request.chunk.id} failed: {e}")
                if not request.future.done():
                    request.future.set_exception(e)
                continue
            if not request.future.done():
                request.future.set_result(data)

    async def _upload_worker(self, worker_id: int) -> None:
        while True:
            request = await self._upload_queue.get()
            if request.future.done():
                continue
            logger.info(f"Uploading {request.chunk.id} ({len(request.payload)} bytes, worker {worker_id})")
            try:
                blob_id = await run_with_retries(
                    lambda: self.transport.upload_blob(request.chunk.id, request.payload),
                    self.upload_retry,
                    f"upload chunk {request.chunk.id}"
                )
            except Exception as e:
                logger.error(f"Upload of chunk {request.chunk.id} failed: {e}")
                if not request.future.done():
                    request.future.set_exception(e)
                continue
            if not request.future.done():
                request.future.set_result(blob_id)
