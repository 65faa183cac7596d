"""Blob store backed by a local directory: one `<blob id>.chk` file per blob."""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import List

from common.exceptions import FatalTransportError, RetriableTransportError
from remote.transports.base import BlobTransport

logger = logging.getLogger(__name__)


class LocalDirectoryTransport(BlobTransport):
    """
    Stores blobs as files in a directory.

    Useful for running the engine without a remote service and in tests.
    Blob ids are fresh UUID hex strings, so re-uploading a chunk never
    overwrites an older blob that a saved index may still reference.
    """

    def __init__(self, directory: Path, max_blob_size: int):
        """
        Initialize transport.

        Args:
            directory: Where blob files live (created on first upload)
            max_blob_size: Chunk size reported to the engine
        """
        self.directory = Path(directory)
        self._max_blob_size = max_blob_size

    def get_blob_path(self, blob_id: str) -> Path:
        """
        Get file path for a blob.

        Raises:
            FatalTransportError: If the id cannot name a blob file
        """
        if not blob_id or '/' in blob_id or '\\' in blob_id or blob_id.startswith('.'):
            raise FatalTransportError(f"Invalid blob id: {blob_id!r}")
        return self.directory / f"{blob_id}.chk"

    def _write(self, blob_id: str, payload: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self.get_blob_path(blob_id).write_bytes(payload)

    def _read(self, blob_id: str) -> bytes:
        return self.get_blob_path(blob_id).read_bytes()

    async def upload_blob(self, name: str, payload: bytes) -> str:
        if len(payload) > self._max_blob_size:
            raise FatalTransportError(
                f"Blob {name} is {len(payload)} bytes, limit is {self._max_blob_size}"
            )
        blob_id = uuid.uuid4().hex
        try:
            await asyncio.to_thread(self._write, blob_id, payload)
        except OSError as e:
            raise RetriableTransportError(f"Failed to write blob for {name}: {e}") from e
        logger.debug(f"Stored {len(payload)} bytes for {name} as {blob_id}")
        return blob_id

    async def download_blob(self, blob_id: str) -> bytes:
        try:
            return await asyncio.to_thread(self._read, blob_id)
        except FileNotFoundError as e:
            raise FatalTransportError(f"Blob {blob_id} does not exist") from e
        except OSError as e:
            raise RetriableTransportError(f"Failed to read blob {blob_id}: {e}") from e

    def max_blob_size(self) -> int:
        return self._max_blob_size

    def list_blobs(self) -> List[str]:
        """
        List all blob ids in the directory.

        Returns:
            List of blob ids (without .chk extension)
        """
        if not self.directory.exists():
            return []
        return [path.stem for path in self.directory.glob("*.chk")]
