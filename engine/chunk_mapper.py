"""Byte-range to chunk arithmetic shared by read, write and truncate."""

from dataclasses import dataclass
from typing import List, Tuple


@dataclass(frozen=True)
class ChunkSlice:
    """
    The part of one chunk touched by a byte range.

    Attributes:
        index: Chunk number within the file
        start: First byte within the chunk
        end: One past the last byte within the chunk
        buffer_offset: Position of `start` relative to the range's first byte
    """
    index: int
    start: int
    end: int
    buffer_offset: int

    @property
    def length(self) -> int:
        return self.end - self.start


class ChunkMapper:
    """
    Maps (offset, length) onto chunk indices and per-chunk byte ranges.

    With a chunk size of 10: 11 bytes at offset 0 cover all of chunk 0 and
    byte 0 of chunk 1; 1 byte at offset 9 covers byte 9 of chunk 0 only.
    """

    def __init__(self, max_chunk_size: int):
        if max_chunk_size <= 0:
            raise ValueError(f"max_chunk_size must be positive, got {max_chunk_size}")
        self.max_chunk_size = max_chunk_size

    def chunk_range(self, offset: int, length: int) -> range:
        """
        Indices of the chunks overlapping [offset, offset + length).

        Args:
            offset: First byte (>= 0)
            length: Number of bytes (>= 0)

        Returns:
            range of chunk indices; empty when length is 0
        """
        if offset < 0 or length < 0:
            raise ValueError(f"Invalid byte range: offset={offset}, length={length}")
        if length == 0:
            return range(0)
        first = offset // self.max_chunk_size
        end_exclusive = -(-(offset + length) // self.max_chunk_size)
        return range(first, end_exclusive)

    def slices(self, offset: int, length: int) -> List[ChunkSlice]:
        """
        Split [offset, offset + length) into per-chunk slices.

        The first slice starts at offset % M, the last ends at
        ((offset + length - 1) % M) + 1, interior slices span the whole chunk.
        Together the slices tile the range exactly.
        """
        size = self.max_chunk_size
        indices = self.chunk_range(offset, length)
        result = []
        covered = 0
        for index in indices:
            start = offset % size if index == indices[0] else 0
            end = (offset + length - 1) % size + 1 if index == indices[-1] else size
            result.append(ChunkSlice(index=index, start=start, end=end, buffer_offset=covered))
            covered += end - start
        return result

    def shrink_point(self, new_size: int) -> Tuple[int, int]:
        """
        Last chunk kept when a file is cut down to `new_size` bytes.

        Returns:
            (last_index, last_length); (-1, 0) when new_size is 0. A length of
            max_chunk_size means the last chunk is exactly full.
        """
        if new_size < 0:
            raise ValueError(f"Invalid size: {new_size}")
        if new_size == 0:
            return -1, 0
        last_index = (new_size - 1) // self.max_chunk_size
        last_length = new_size % self.max_chunk_size or self.max_chunk_size
        return last_index, last_length

    def chunk_count(self, size: int) -> int:
        """Number of chunks needed to hold `size` bytes."""
        return -(-size // self.max_chunk_size)
