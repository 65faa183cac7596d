"""Transport contract used by the remote blob client."""

from abc import ABC, abstractmethod


class BlobTransport(ABC):
    """
    Single-attempt access to a remote blob store.

    Implementations raise RetriableTransportError for transient failures and
    FatalTransportError for everything else; retrying is the client's job.
    """

    @abstractmethod
    async def upload_blob(self, name: str, payload: bytes) -> str:
        """
        Store a blob.

        Args:
            name: Label for the blob (the chunk id)
            payload: Blob contents

        Returns:
            Opaque blob id for later downloads
        """

    @abstractmethod
    async def download_blob(self, blob_id: str) -> bytes:
        """Fetch the contents of a previously uploaded blob."""

    @abstractmethod
    def max_blob_size(self) -> int:
        """Largest payload the store accepts, i.e. the chunk size."""

    async def close(self) -> None:
        """Release connections held by the transport."""
