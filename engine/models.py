"""Index nodes (Dir, File), file chunk metadata and in-memory chunk payloads."""

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from common.constants import DEFAULT_FILE_MODE, ROOT_DIR_MODE


def now_ns() -> int:
    """Current wall-clock time in nanoseconds, the unit of node timestamps."""
    return time.time_ns()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(eq=False)
class FileChunk:
    """
    Metadata for one chunk of a file.

    Identity (equality and hash) is the chunk id alone, so a FileChunk can be
    used as a cache key while its other fields change.

    Attributes:
        id: Stable UUID of the chunk
        remote_blob_id: Id returned by the blob store, None if never uploaded
        size: Number of bytes in use (<= max chunk size)
        last_use: Monotonic timestamp of the last cache access, not persisted
    """
    id: str = field(default_factory=new_id)
    remote_blob_id: Optional[str] = None
    size: int = 0
    last_use: float = field(default_factory=time.monotonic)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FileChunk):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def touch(self) -> None:
        self.last_use = time.monotonic()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'id': self.id, 'size': self.size}
        if self.remote_blob_id is not None:
            data['remote_blob_id'] = self.remote_blob_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileChunk':
        return cls(
            id=data['id'],
            remote_blob_id=data.get('remote_blob_id'),
            size=int(data['size'])
        )


@dataclass(eq=False)
class Node(ABC):
    """
    A node in the filesystem index. Serialized and stored locally.

    Timestamps are integer nanoseconds since the epoch.
    """
    name: str
    permissions: int
    uid: int = 0
    gid: int = 0
    access_time: int = field(default_factory=now_ns)
    modification_time: int = field(default_factory=now_ns)

    def _base_dict(self, node_type: str) -> Dict[str, Any]:
        return {
            'type': node_type,
            'name': self.name,
            'permissions': self.permissions,
            'uid': self.uid,
            'gid': self.gid,
            'access_time': self.access_time,
            'modification_time': self.modification_time,
        }

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Serialize the node (and its subtree) into a tagged dictionary."""


@dataclass(eq=False)
class Dir(Node):
    """A directory; owns its children, keyed by name."""
    children: Dict[str, Node] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict('dir')
        data['children'] = {name: child.to_dict() for name, child in self.children.items()}
        return data


@dataclass(eq=False)
class File(Node):
    """A regular file whose contents are split into chunks."""
    id: str = field(default_factory=new_id)
    size: int = 0
    chunks: List[FileChunk] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict('file')
        data['id'] = self.id
        data['size'] = self.size
        data['chunks'] = [chunk.to_dict() for chunk in self.chunks]
        return data


def node_from_dict(data: Dict[str, Any]) -> Node:
    """
    Rebuild a node (and its subtree) from its serialized form.

    Args:
        data: Dictionary produced by Node.to_dict()

    Returns:
        Dir or File instance

    Raises:
        ValueError: If the node type tag is unknown
    """
    attrs = dict(
        name=data['name'],
        permissions=int(data['permissions']),
        uid=int(data.get('uid', 0)),
        gid=int(data.get('gid', 0)),
        access_time=int(data.get('access_time', 0)),
        modification_time=int(data.get('modification_time', 0)),
    )
    node_type = data.get('type')
    if node_type == 'dir':
        children = {
            name: node_from_dict(child)
            for name, child in data.get('children', {}).items()
        }
        return Dir(children=children, **attrs)
    if node_type == 'file':
        return File(
            id=data['id'],
            size=int(data.get('size', 0)),
            chunks=[FileChunk.from_dict(chunk) for chunk in data.get('chunks', [])],
            **attrs
        )
    raise ValueError(f"Unknown node type: {node_type!r}")


def new_root_dir(uid: int = 0, gid: int = 0) -> Dir:
    """Create an empty root directory."""
    return Dir(name='/', permissions=ROOT_DIR_MODE, uid=uid, gid=gid)


def new_file(name: str, permissions: int = DEFAULT_FILE_MODE, uid: int = 0, gid: int = 0) -> File:
    return File(name=name, permissions=permissions, uid=uid, gid=gid)


@dataclass(eq=False)
class CachedChunk:
    """
    In-memory payload of one FileChunk.

    The buffer is always allocated to full capacity so writes never reallocate;
    bytes past `size` are don't-care.

    Attributes:
        data: Buffer of length == capacity
        size: Length of the valid prefix
        dirty: True if the buffer differs from the remote copy
        uploading: True while an upload of this payload is in flight
        id: Fresh UUID for diagnostics only
    """
    data: bytearray
    size: int = 0
    dirty: bool = False
    uploading: bool = False
    id: str = field(default_factory=new_id)

    @property
    def capacity(self) -> int:
        return len(self.data)

    def payload(self) -> bytes:
        """Copy of the valid prefix, safe to hand to an upload."""
        return bytes(self.data[:self.size])

    @classmethod
    def empty(cls, capacity: int) -> 'CachedChunk':
        return cls(data=bytearray(capacity))

    @classmethod
    def of(cls, payload: bytes, capacity: int) -> 'CachedChunk':
        """
        Wrap downloaded bytes in a full-capacity buffer.

        Raises:
            ValueError: If the payload is larger than the capacity
        """
        if len(payload) > capacity:
            raise ValueError(f"Chunk payload of {len(payload)} bytes exceeds capacity {capacity}")
        data = bytearray(capacity)
        data[:len(payload)] = payload
        return cls(data=data, size=len(payload))
