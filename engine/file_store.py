"""Byte-level file contents on top of the chunk mapper and the chunk cache."""

import asyncio
import logging
import weakref

from common.exceptions import ChunkDroppedError, NotFoundError
from common.types import Priority
from engine.chunk_cache import ChunkCache
from engine.chunk_mapper import ChunkMapper
from engine.models import CachedChunk, File, FileChunk, now_ns

logger = logging.getLogger(__name__)


class _FileGuard:
    """
    Coordinates size changes of one file with its in-flight writes.

    A write claims its byte range (and zero-fills any gap before it) while
    holding `lock`, then writes its chunks without it. Shrinking and deleting
    hold `lock` and wait on `idle` until no write is in flight.
    """

    def __init__(self):
        self.lock = asyncio.Lock()
        self.idle = asyncio.Event()
        self.idle.set()
        self.writers = 0
        self.deleted = False

    def begin_write(self) -> None:
        self.writers += 1
        self.idle.clear()

    def end_write(self) -> None:
        self.writers -= 1
        if self.writers == 0:
            self.idle.set()


class FileStore:
    """
    Reads, writes and resizes File nodes.

    Every operation maps its byte range to chunk slices, fetches each chunk
    through the cache and, for mutations, marks the chunk dirty and touches
    it so the cache tracks the new payload. Writes to one file run
    concurrently once their ranges are claimed.
    """

    def __init__(self, cache: ChunkCache, mapper: ChunkMapper, prefetch_depth: int = 3):
        """
        Initialize file store.

        Args:
            cache: Chunk cache shared by all files
            mapper: Range arithmetic for the cache's chunk size
            prefetch_depth: Chunks past a read to fetch at low priority
        """
        self.cache = cache
        self.mapper = mapper
        self.prefetch_depth = prefetch_depth
        self._guards: 'weakref.WeakKeyDictionary[File, _FileGuard]' = weakref.WeakKeyDictionary()

    def _guard(self, file: File) -> _FileGuard:
        guard = self._guards.get(file)
        if guard is None:
            guard = _FileGuard()
            self._guards[file] = guard
        return guard

    def _check_not_deleted(self, file: File) -> None:
        guard = self._guards.get(file)
        if guard is not None and guard.deleted:
            raise NotFoundError(f"File {file.id} was deleted")

    def _chunk_at(self, file: File, index: int) -> FileChunk:
        """Return chunk `index`, appending fresh chunks when the file grows into it."""
        while index >= len(file.chunks):
            chunk = FileChunk()
            file.chunks.append(chunk)
            logger.debug(f"Created chunk {len(file.chunks) - 1} ({chunk.id}) for file {file.id}")
        return file.chunks[index]

    async def _commit(self, chunk: FileChunk, cached: CachedChunk, end: int) -> None:
        cached.size = max(cached.size, end)
        chunk.size = cached.size
        cached.dirty = True
        await self.cache.touch(chunk, cached)

    async def read(self, file: File, size: int, offset: int) -> bytes:
        """
        Read up to `size` bytes at `offset`.

        Returns:
            The bytes read; shorter than `size` (possibly empty) at end of file

        Raises:
            NotFoundError: If the file was deleted before the read finished
        """
        self._check_not_deleted(file)
        if offset >= file.size or size <= 0:
            return b''
        length = min(size, file.size - offset)
        result = bytearray(length)

        slices = self.mapper.slices(offset, length)
        for piece in slices:
            if piece.index >= len(file.chunks):
                # Bytes past the last chunk read as zeros.
                continue
            try:
                cached = await self.cache.get(file.chunks[piece.index], Priority.HIGH)
            except ChunkDroppedError:
                # Cut off by a concurrent shrink or delete.
                continue
            result[piece.buffer_offset:piece.buffer_offset + piece.length] = \
                cached.data[piece.start:piece.end]
        self._check_not_deleted(file)

        self._prefetch(file, slices[-1].index + 1)
        file.access_time = now_ns()
        return bytes(result)

    def _prefetch(self, file: File, first_index: int) -> None:
        """Queue low-priority fetches of the chunks following a read."""
        for chunk in file.chunks[first_index:first_index + self.prefetch_depth]:
            if chunk.remote_blob_id is None or chunk in self.cache:
                continue
            logger.debug(f"Prefetching chunk {chunk.id}")
            future = self.cache.get_async(chunk, Priority.LOW)
            future.add_done_callback(self._log_prefetch_failure)

    @staticmethod
    def _log_prefetch_failure(future: asyncio.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Prefetch failed: {error}", exc_info=error)

    async def write(self, file: File, data: bytes, offset: int) -> int:
        """
        Write `data` at `offset`, zero-filling any gap past the end of file.

        The new end of file is recorded before any chunk is fetched, so a
        concurrent write further out only zero-fills bytes nobody claimed.

        Returns:
            Number of bytes written

        Raises:
            NotFoundError: If the file was deleted
        """
        guard = self._guard(file)
        async with guard.lock:
            if guard.deleted:
                raise NotFoundError(f"File {file.id} was deleted")
            if offset > file.size:
                await self._expand(file, offset)
            file.size = max(file.size, offset + len(data))
            guard.begin_write()

        try:
            for piece in self.mapper.slices(offset, len(data)):
                chunk = self._chunk_at(file, piece.index)
                cached = await self.cache.get(chunk, Priority.HIGH)
                cached.data[piece.start:piece.end] = \
                    data[piece.buffer_offset:piece.buffer_offset + piece.length]
                await self._commit(chunk, cached, piece.end)
        finally:
            guard.end_write()

        file.modification_time = now_ns()
        return len(data)

    async def _expand(self, file: File, new_size: int) -> None:
        """Grow the file to `new_size`, writing zeros into the new range."""
        for piece in self.mapper.slices(file.size, new_size - file.size):
            chunk = self._chunk_at(file, piece.index)
            cached = await self.cache.get(chunk, Priority.HIGH)
            cached.data[piece.start:piece.end] = bytes(piece.length)
            await self._commit(chunk, cached, piece.end)
        file.size = new_size

    def _shrink(self, file: File, new_size: int) -> None:
        last_index, last_length = self.mapper.shrink_point(new_size)
        removed = file.chunks[last_index + 1:]
        for chunk in removed:
            self.cache.drop(chunk)
        del file.chunks[last_index + 1:]
        logger.debug(f"Dropped {len(removed)} chunk(s) of file {file.id}")

        if last_index >= 0 and last_index < len(file.chunks):
            chunk = file.chunks[last_index]
            chunk.size = min(chunk.size, last_length)
            cached = self.cache.peek(chunk)
            if cached is not None:
                cached.size = min(cached.size, last_length)
        file.size = new_size

    async def truncate(self, file: File, new_size: int) -> None:
        """
        Resize the file.

        Growing zero-fills the new range; shrinking waits for in-flight
        writes, then drops every chunk past the new end and cuts the last
        kept chunk to the remaining length.

        Raises:
            ValueError: If new_size is negative
            NotFoundError: If the file was deleted
        """
        if new_size < 0:
            raise ValueError(f"Invalid size: {new_size}")
        guard = self._guard(file)
        async with guard.lock:
            if guard.deleted:
                raise NotFoundError(f"File {file.id} was deleted")
            if new_size > file.size:
                await self._expand(file, new_size)
            elif new_size < file.size:
                await guard.idle.wait()
                self._shrink(file, new_size)
            file.modification_time = now_ns()

    async def delete(self, file: File) -> int:
        """
        Dispose of a file that was removed from the index.

        Waits for in-flight writes, then drops every chunk. Later writes,
        truncates and reads of the file raise NotFoundError.

        Returns:
            Number of chunks the file had
        """
        guard = self._guard(file)
        async with guard.lock:
            guard.deleted = True
            await guard.idle.wait()
            return self.delete_chunks(file)

    def delete_chunks(self, file: File) -> int:
        """
        Drop all of the file's chunks from the cache and forget them.

        Returns:
            Number of chunks the file had
        """
        count = len(file.chunks)
        for chunk in file.chunks:
            self.cache.drop(chunk)
        file.chunks = []
        return count
