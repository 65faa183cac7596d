"""Blob transports: the concrete stores chunks are uploaded to and downloaded from."""

from remote.transports.base import BlobTransport
from remote.transports.local import LocalDirectoryTransport
from remote.transports.telegram import TelegramTransport

__all__ = [
    "BlobTransport",
    "LocalDirectoryTransport",
    "TelegramTransport",
]
