"""Filesystem call surface: path-based operations over the index and file store."""

import logging
import stat
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from common.exceptions import (
    AlreadyExistsError,
    DirectoryNotEmptyError,
    InvalidOperationError,
    IsDirectoryError,
    NotDirectoryError,
    NotFoundError,
    ResourceBusyError,
)
from engine.directory_index import DirectoryIndex
from engine.file_store import FileStore
from engine.models import Dir, File, Node, new_file, now_ns
from engine.paths import get_node_name, get_parent_path, is_within

logger = logging.getLogger(__name__)


@dataclass
class NodeAttributes:
    """Attributes reported by getattr. Times are nanoseconds since the epoch."""
    mode: int
    size: int
    uid: int
    gid: int
    access_time: int
    modification_time: int
    nlink: int

    @classmethod
    def of(cls, node: Node) -> 'NodeAttributes':
        is_file = isinstance(node, File)
        return cls(
            mode=node.permissions,
            size=node.size if is_file else 0,
            uid=node.uid,
            gid=node.gid,
            access_time=node.access_time,
            modification_time=node.modification_time,
            nlink=1 if is_file else 2,
        )

    def to_stat(self) -> Dict[str, Any]:
        """Attributes keyed the way os.stat_result names them."""
        return {
            'st_mode': self.mode,
            'st_size': self.size,
            'st_uid': self.uid,
            'st_gid': self.gid,
            'st_nlink': self.nlink,
            'st_atime': self.access_time / 1e9,
            'st_mtime': self.modification_time / 1e9,
            'st_atime_ns': self.access_time,
            'st_mtime_ns': self.modification_time,
        }


class FileCollageFS:
    """
    The operations a kernel filesystem adapter forwards to the engine.

    Every failure is raised as a FileCollageError subclass whose errno_code
    is the value the adapter returns (negated) to the kernel.
    """

    def __init__(self, index: DirectoryIndex, file_store: FileStore):
        self.index = index
        self.file_store = file_store

    def _lookup(self, path: str) -> Node:
        try:
            node = self.index.lookup_node(path)
        except ValueError as e:
            raise InvalidOperationError(str(e)) from e
        if node is None:
            raise NotFoundError(f"No such file or directory: {path}")
        return node

    def _lookup_file(self, path: str) -> File:
        node = self._lookup(path)
        if not isinstance(node, File):
            raise IsDirectoryError(f"Is a directory: {path}")
        return node

    def _parent_dir(self, path: str) -> Dir:
        """Resolve the directory a new node at `path` goes into."""
        if path == '/':
            raise ResourceBusyError("The root directory cannot be replaced")
        parent = self._lookup(get_parent_path(path))
        if not isinstance(parent, Dir):
            raise NotDirectoryError(f"Not a directory: {get_parent_path(path)}")
        return parent

    def _prepare_new_node(self, path: str) -> Tuple[Dir, str]:
        try:
            existing = self.index.lookup_node(path)
        except ValueError as e:
            raise InvalidOperationError(str(e)) from e
        if existing is not None:
            raise AlreadyExistsError(f"File exists: {path}")
        return self._parent_dir(path), get_node_name(path)

    async def create(self, path: str, mode: int, uid: int = 0, gid: int = 0) -> File:
        """
        Create an empty regular file.

        Raises:
            AlreadyExistsError: If the path exists
            NotFoundError: If the parent directory is missing
        """
        logger.debug(f"Creating file {path}")
        parent, name = self._prepare_new_node(path)
        if stat.S_IFMT(mode) == 0:
            mode |= stat.S_IFREG
        file = new_file(name, permissions=mode, uid=uid, gid=gid)
        self.index.add_node(parent, file)
        return file

    async def open(self, path: str) -> None:
        """Check that the path exists; no per-handle state is kept."""
        self._lookup(path)

    async def getattr(self, path: str) -> NodeAttributes:
        return NodeAttributes.of(self._lookup(path))

    async def mkdir(self, path: str, mode: int, uid: int = 0, gid: int = 0) -> Dir:
        logger.debug(f"Creating dir {path}")
        parent, name = self._prepare_new_node(path)
        directory = Dir(name=name, permissions=stat.S_IFDIR | stat.S_IMODE(mode), uid=uid, gid=gid)
        self.index.add_node(parent, directory)
        return directory

    async def read(self, path: str, size: int, offset: int) -> bytes:
        logger.debug(f"Reading {size} bytes at {offset} from {path}")
        if offset < 0:
            raise InvalidOperationError(f"Invalid offset: {offset}")
        file = self._lookup_file(path)
        return await self.file_store.read(file, size, offset)

    async def readdir(self, path: str) -> List[str]:
        node = self._lookup(path)
        if not isinstance(node, Dir):
            raise NotDirectoryError(f"Not a directory: {path}")
        return ['.', '..'] + list(node.children)

    async def rename(self, old_path: str, new_path: str) -> None:
        """
        Move a node, replacing a compatible destination.

        A destination file is replaced (its chunks are dropped); a destination
        directory is replaced only by a directory and only when it is empty.

        Raises:
            NotFoundError: If the source or the destination's parent is missing
            NotDirectoryError: If the destination's parent is a file, or a
                directory would replace a file
            IsDirectoryError: If a file would replace a directory
            DirectoryNotEmptyError: If the destination directory has children
            InvalidOperationError: If a directory would move into itself
            ResourceBusyError: If either path is the root
        """
        logger.debug(f"Renaming {old_path} to {new_path}")
        if old_path == '/':
            raise ResourceBusyError("The root directory cannot be moved")
        node = self._lookup(old_path)
        new_parent = self._parent_dir(new_path)
        if old_path == new_path:
            return
        if isinstance(node, Dir) and is_within(new_path, old_path):
            raise InvalidOperationError(f"Cannot move {old_path} into itself")

        new_name = get_node_name(new_path)
        existing = new_parent.children.get(new_name)
        if existing is not None:
            if isinstance(node, Dir):
                if not isinstance(existing, Dir):
                    raise NotDirectoryError(f"Not a directory: {new_path}")
                if existing.children:
                    raise DirectoryNotEmptyError(f"Directory not empty: {new_path}")
            elif isinstance(existing, Dir):
                raise IsDirectoryError(f"Is a directory: {new_path}")
            self.index.remove_node(new_parent, existing)

        old_parent = self.index.lookup_parent(old_path)
        self.index.remove_node(old_parent, node)
        node.name = new_name
        self.index.add_node(new_parent, node)

        if isinstance(existing, File):
            dropped = await self.file_store.delete(existing)
            logger.debug(f"Replaced {new_path}, dropped {dropped} chunk(s)")

    async def rmdir(self, path: str) -> None:
        logger.debug(f"Removing dir {path}")
        if path == '/':
            raise ResourceBusyError("The root directory cannot be removed")
        node = self._lookup(path)
        if not isinstance(node, Dir):
            raise NotDirectoryError(f"Not a directory: {path}")
        if node.children:
            raise DirectoryNotEmptyError(f"Directory not empty: {path}")
        self.index.remove_node(self.index.lookup_parent(path), node)

    async def truncate(self, path: str, size: int) -> None:
        logger.debug(f"Truncating {path} to {size} bytes")
        if size < 0:
            raise InvalidOperationError(f"Invalid size: {size}")
        file = self._lookup_file(path)
        await self.file_store.truncate(file, size)

    async def unlink(self, path: str) -> None:
        logger.debug(f"Unlinking {path}")
        file = self._lookup_file(path)
        self.index.remove_node(self.index.lookup_parent(path), file)
        dropped = await self.file_store.delete(file)
        logger.debug(f"Unlinked {path}, dropped {dropped} chunk(s)")

    async def write(self, path: str, data: bytes, offset: int) -> int:
        logger.debug(f"Writing {len(data)} bytes at {offset} to {path}")
        if offset < 0:
            raise InvalidOperationError(f"Invalid offset: {offset}")
        file = self._lookup_file(path)
        return await self.file_store.write(file, data, offset)

    async def utimens(
        self,
        path: str,
        access_time: Optional[int] = None,
        modification_time: Optional[int] = None
    ) -> None:
        """
        Set access and modification times (nanoseconds); None means now.
        """
        node = self._lookup(path)
        now = now_ns()
        node.access_time = now if access_time is None else access_time
        node.modification_time = now if modification_time is None else modification_time
