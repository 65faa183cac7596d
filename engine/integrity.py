"""Startup check for files whose chunks were never uploaded."""

import logging
from enum import Enum
from typing import List

from common.exceptions import IntegrityViolationError
from engine.directory_index import DirectoryIndex
from engine.file_store import FileStore
from engine.models import File

logger = logging.getLogger(__name__)


class BrokenFilePolicy(str, Enum):
    """What to do with broken files found at startup."""
    EXIT = "exit"
    MOUNT = "mount"
    REMOVE = "remove"


def find_broken_files(index: DirectoryIndex) -> List[str]:
    """
    Find files that reference a chunk without a remote copy.

    Such chunks were written but not uploaded before the last snapshot, so
    their contents are lost.

    Returns:
        Paths of broken files, sorted
    """
    broken = [
        path for path, file in index.iter_files()
        if any(chunk.remote_blob_id is None for chunk in file.chunks)
    ]
    return sorted(broken)


def remove_files(index: DirectoryIndex, file_store: FileStore, paths: List[str]) -> int:
    """
    Delete the given files from the index.

    Returns:
        Number of files removed
    """
    removed = 0
    for path in paths:
        node = index.lookup_node(path)
        if not isinstance(node, File):
            continue
        index.remove_node(index.lookup_parent(path), node)
        file_store.delete_chunks(node)
        logger.warning(f"Deleted file {path}")
        removed += 1
    return removed


def enforce_policy(
    index: DirectoryIndex,
    file_store: FileStore,
    policy: BrokenFilePolicy
) -> List[str]:
    """
    Check the index and apply the operator's policy to broken files.

    Returns:
        Paths of broken files that were found

    Raises:
        IntegrityViolationError: If broken files exist and the policy is EXIT
    """
    broken = find_broken_files(index)
    if not broken:
        logger.info("Verified integrity of existing files")
        return broken

    for path in broken:
        logger.error(f"File has chunks without a remote copy: {path}")

    if policy == BrokenFilePolicy.REMOVE:
        remove_files(index, file_store, broken)
    elif policy == BrokenFilePolicy.MOUNT:
        logger.warning(f"Mounting with {len(broken)} broken file(s)")
    else:
        raise IntegrityViolationError(broken)
    return broken
