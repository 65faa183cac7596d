"""Bounded, single-flight cache of chunk payloads with LRU eviction and dirty tracking."""

import asyncio
import heapq
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from common.exceptions import ChunkDroppedError, FlushError
from common.types import Priority
from engine.models import CachedChunk, FileChunk
from remote.client import RemoteClient

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _CacheEntry:
    """
    State of one cached chunk.

    The future resolves to the payload once it has been fetched or created;
    every caller of get() for the same chunk awaits this one future.
    """
    future: asyncio.Future
    task: Optional[asyncio.Task] = None
    holds_slot: bool = False
    upload_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def payload(self) -> Optional[CachedChunk]:
        if self.future.done() and not self.future.cancelled() and self.future.exception() is None:
            return self.future.result()
        return None


class ChunkCache:
    """
    Maps FileChunk -> in-memory payload.

    Capacity is bounded twice: a hard limit enforced by a semaphore (a new
    entry waits for a free slot) and a lower soft limit that starts a
    background eviction pass of the least recently used entries. Dirty
    entries are uploaded before they are evicted; an entry that is already
    uploading is left alone.
    """

    def __init__(
        self,
        remote_client: RemoteClient,
        soft_limit: int,
        hard_limit: int,
        simultaneous_evictions: int = 5
    ):
        """
        Initialize cache.

        Args:
            remote_client: Source and sink of chunk payloads
            soft_limit: Entry count above which eviction starts
            hard_limit: Maximum number of entries holding a slot
            simultaneous_evictions: Entries considered per eviction pass
        """
        if soft_limit < 1 or hard_limit < soft_limit:
            raise ValueError(
                f"Cache limits must satisfy 1 <= soft ({soft_limit}) <= hard ({hard_limit})"
            )
        if simultaneous_evictions < 1:
            raise ValueError("simultaneous_evictions must be at least 1")
        self._remote = remote_client
        self.soft_limit = soft_limit
        self.hard_limit = hard_limit
        self.simultaneous_evictions = simultaneous_evictions

        self._entries: Dict[FileChunk, _CacheEntry] = {}
        self._slots = asyncio.Semaphore(hard_limit)
        self._slots_in_use = 0
        self._eviction_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, chunk: FileChunk) -> bool:
        return chunk in self._entries

    @property
    def slots_in_use(self) -> int:
        return self._slots_in_use

    @property
    def chunk_capacity(self) -> int:
        return self._remote.max_chunk_size()

    def peek(self, chunk: FileChunk) -> Optional[CachedChunk]:
        """Return the payload if it is cached and fetched, without fetching."""
        entry = self._entries.get(chunk)
        return entry.payload() if entry is not None else None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _acquire_slot(self, chunk: FileChunk, entry: _CacheEntry) -> None:
        await self._slots.acquire()
        entry.holds_slot = True
        self._slots_in_use += 1
        if self._entries.get(chunk) is not entry:
            # Removed while waiting for the slot.
            self._release_slot(entry)

    def _release_slot(self, entry: _CacheEntry) -> None:
        if entry.holds_slot:
            entry.holds_slot = False
            self._slots_in_use -= 1
            self._slots.release()

    def _remove(self, chunk: FileChunk, entry: _CacheEntry) -> bool:
        if self._entries.get(chunk) is not entry:
            return False
        del self._entries[chunk]
        self._release_slot(entry)
        return True

    async def get(self, chunk: FileChunk, priority: Priority = Priority.HIGH) -> CachedChunk:
        """
        Return the chunk's payload, fetching it if it is not cached.

        Waits for an in-flight fetch of the same chunk instead of starting a
        second one. Cancelling the caller does not cancel the shared fetch.

        Raises:
            ChunkDroppedError: If the chunk was dropped while being fetched
            TransportError: If the download failed
        """
        future = self.get_async(chunk, priority)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if future.cancelled() and not asyncio.current_task().cancelling():
                raise ChunkDroppedError(
                    f"Chunk {chunk.id} was dropped while being fetched"
                ) from None
            raise

    def get_async(self, chunk: FileChunk, priority: Priority = Priority.HIGH) -> asyncio.Future:
        """
        Return the future for the chunk's payload immediately.

        On a miss a pending future is inserted before anything is awaited, so
        concurrent callers find it and share a single fetch.
        """
        chunk.touch()
        entry = self._entries.get(chunk)
        if entry is not None:
            logger.debug(f"Returning existing chunk future for {chunk.id}")
            return entry.future

        logger.debug(f"Cache miss, retrieving data for {chunk.id}")
        entry = _CacheEntry(future=asyncio.get_running_loop().create_future())
        self._entries[chunk] = entry
        entry.task = self._spawn(self._load(chunk, entry, priority))
        self._maybe_evict()
        return entry.future

    async def _load(self, chunk: FileChunk, entry: _CacheEntry, priority: Priority) -> None:
        capacity = self.chunk_capacity
        try:
            await self._acquire_slot(chunk, entry)
            if chunk.remote_blob_id is None:
                cached = CachedChunk.empty(capacity)
            else:
                payload = await self._remote.download(chunk, priority)
                cached = CachedChunk.of(payload[:chunk.size], capacity)
                logger.debug(f"Downloaded chunk for {chunk.id}")
        except asyncio.CancelledError:
            if not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as e:
            logger.error(f"Failed to load chunk {chunk.id}: {e}")
            self._remove(chunk, entry)
            self._release_slot(entry)
            if not entry.future.done():
                entry.future.set_exception(e)
            return

        chunk.touch()
        if not entry.future.done():
            entry.future.set_result(cached)
        if self._entries.get(chunk) is not entry:
            # Evicted while pending; waiters got their payload but it is not cached.
            self._release_slot(entry)

    async def touch(self, chunk: FileChunk, cached: CachedChunk) -> None:
        """
        Record that the chunk's payload was created or modified.

        Re-inserts the payload if needed and refreshes its last use. A newly
        inserted entry waits for a hard-limit slot.
        """
        chunk.touch()
        entry = self._entries.get(chunk)
        if entry is not None and entry.future.done():
            if entry.payload() is not cached:
                replacement = asyncio.get_running_loop().create_future()
                replacement.set_result(cached)
                entry.future = replacement
            return
        if entry is not None:
            # Still being fetched; the fetch result is superseded by `cached`.
            self._remove(chunk, entry)

        future = asyncio.get_running_loop().create_future()
        future.set_result(cached)
        entry = _CacheEntry(future=future)
        self._entries[chunk] = entry
        self._maybe_evict()
        await self._acquire_slot(chunk, entry)

    def drop(self, chunk: FileChunk) -> bool:
        """
        Remove a chunk unconditionally, cancelling a pending fetch.

        Used when the chunk's data is no longer needed (unlink, shrink).
        An upload already handed to the remote client still completes.

        Returns:
            True if the chunk was cached
        """
        entry = self._entries.pop(chunk, None)
        if entry is None:
            return False
        self._release_slot(entry)
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
        if not entry.future.done():
            entry.future.cancel()
        logger.debug(f"Dropped chunk {chunk.id} from cache")
        return True

    async def _upload(self, chunk: FileChunk, entry: _CacheEntry, cached: CachedChunk) -> bool:
        """
        Upload the payload if it is dirty, at most one upload per entry at a time.

        The dirty flag is cleared before the payload snapshot is taken, so a
        write that lands during the upload marks the chunk dirty again.

        Returns:
            True if an upload was performed
        """
        async with entry.upload_lock:
            if not cached.dirty:
                return False
            cached.dirty = False
            cached.uploading = True
            payload = cached.payload()
            try:
                blob_id = await self._remote.upload(chunk, payload)
            except BaseException:
                cached.dirty = True
                raise
            finally:
                cached.uploading = False
            chunk.remote_blob_id = blob_id
            return True

    async def flush(self) -> int:
        """
        Upload every dirty fetched payload and wait for all uploads.

        Entries still being fetched are skipped. Uploads already in flight
        are waited for so the recorded blob ids are current on return.

        Returns:
            Number of uploads performed

        Raises:
            FlushError: If any upload failed (after all others settled)
        """
        targets: List[Tuple[FileChunk, _CacheEntry, CachedChunk]] = []
        for chunk, entry in list(self._entries.items()):
            cached = entry.payload()
            if cached is None:
                continue
            if cached.dirty or cached.uploading:
                targets.append((chunk, entry, cached))

        if not targets:
            return 0

        logger.info(f"Flushing {len(targets)} dirty chunk(s)")
        results = await asyncio.gather(
            *(self._upload(chunk, entry, cached) for chunk, entry, cached in targets),
            return_exceptions=True
        )
        uploaded = sum(1 for result in results if result is True)
        failures = [result for result in results if isinstance(result, BaseException)]

        self._maybe_evict()

        if failures:
            for failure in failures:
                logger.error(f"Chunk upload failed during flush: {failure}")
            raise FlushError(
                f"{len(failures)} of {len(targets)} chunk upload(s) failed"
            ) from failures[0]
        return uploaded

    def _find_oldest_chunks(self) -> List[Tuple[FileChunk, _CacheEntry]]:
        return heapq.nsmallest(
            self.simultaneous_evictions,
            list(self._entries.items()),
            key=lambda item: item[0].last_use
        )

    def _maybe_evict(self) -> None:
        if len(self._entries) <= self.soft_limit:
            return
        if self._eviction_task is not None and not self._eviction_task.done():
            return
        self._eviction_task = self._spawn(self._evict_oldest_chunks())

    async def _evict_oldest_chunks(self) -> None:
        while len(self._entries) > self.soft_limit:
            oldest = self._find_oldest_chunks()
            results = await asyncio.gather(
                *(self._evict(chunk, entry) for chunk, entry in oldest),
                return_exceptions=True
            )
            evicted = sum(1 for result in results if result is True)
            if evicted == 0:
                logger.debug("Eviction pass made no progress")
                break

    async def _evict(self, chunk: FileChunk, entry: _CacheEntry) -> bool:
        if self._entries.get(chunk) is not entry:
            return False
        if not entry.future.done():
            # Nothing committed yet. Current waiters still get this fetch's
            # result; a get() after removal starts a second download.
            return self._remove(chunk, entry)

        cached = entry.payload()
        if cached is None:
            return self._remove(chunk, entry)
        if cached.uploading:
            return False
        if not cached.dirty:
            logger.debug(f"Removing clean cached chunk {cached.id} because cache is full")
            return self._remove(chunk, entry)

        logger.debug(f"Evicting dirty cached chunk {cached.id} because cache is full")
        try:
            await self._upload(chunk, entry, cached)
        except Exception as e:
            logger.error(f"Failed to upload chunk {chunk.id} during eviction: {e}")
            return False
        if cached.dirty:
            return False
        return self._remove(chunk, entry)

    async def close(self) -> None:
        """Cancel background eviction and fetch tasks."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
