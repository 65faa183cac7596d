"""Custom exception classes for the storage engine."""

import errno
from typing import List, Optional


class FileCollageError(Exception):
    """
    Base exception class for all engine errors.

    errno_code is the POSIX error a filesystem adapter should report.
    """
    errno_code = errno.EIO


class NotFoundError(FileCollageError):
    """
    Raised when a path does not resolve to a node.
    """
    errno_code = errno.ENOENT


class ChunkDroppedError(NotFoundError):
    """
    Raised to callers waiting on a chunk that was dropped (unlink, shrink)
    before its fetch finished.
    """
    pass


class AlreadyExistsError(FileCollageError):
    """
    Raised when creating a node at a path that is already taken.
    """
    errno_code = errno.EEXIST


class WrongTypeError(FileCollageError):
    """
    Raised when an operation expected a directory and got a file, or vice versa.
    """
    pass


class NotDirectoryError(WrongTypeError):
    """
    Raised when a directory was expected but a file was found.
    """
    errno_code = errno.ENOTDIR


class IsDirectoryError(WrongTypeError):
    """
    Raised when a file was expected but a directory was found.
    """
    errno_code = errno.EISDIR


class DirectoryNotEmptyError(FileCollageError):
    """
    Raised when removing or replacing a directory that still has children.
    """
    errno_code = errno.ENOTEMPTY


class InvalidOperationError(FileCollageError):
    """
    Raised for requests that would break the tree, e.g. moving a directory into itself.
    """
    errno_code = errno.EINVAL


class ResourceBusyError(FileCollageError):
    """
    Raised when operating on the root directory in a way that would detach it.
    """
    errno_code = errno.EBUSY


class TransportError(FileCollageError):
    """
    Base class for failures talking to the remote blob store.
    """
    pass


class RetriableTransportError(TransportError):
    """
    Raised for transient remote failures: rate limits, timeouts, connectivity
    and server-side hiccups. Retried by the remote client.
    """

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class FatalTransportError(TransportError):
    """
    Raised for remote failures that will not go away by retrying,
    e.g. a permanently invalid blob id.
    """
    pass


class RetriesExhaustedError(TransportError):
    """
    Raised when a retriable operation failed on every allowed attempt.
    """
    pass


class FlushError(FileCollageError):
    """
    Raised when one or more dirty chunks could not be uploaded during a flush.
    """
    pass


class IntegrityViolationError(FileCollageError):
    """
    Raised at startup when files reference chunks that were never uploaded.
    """

    def __init__(self, paths: List[str]):
        super().__init__(f"{len(paths)} file(s) have chunks without a remote copy")
        self.paths = list(paths)


class ConfigError(FileCollageError):
    """
    Raised when the configuration file is unreadable or invalid.
    """
    pass


def errno_for(exc: BaseException) -> int:
    """
    Map an exception raised by the engine to a POSIX errno.

    Args:
        exc: Any exception raised from a filesystem operation

    Returns:
        errno value (positive); EIO for anything unrecognised
    """
    if isinstance(exc, FileCollageError):
        return exc.errno_code
    if isinstance(exc, OSError) and exc.errno:
        return exc.errno
    return errno.EIO
