"""In-memory directory tree: path resolution and node insert/remove."""

import logging
from typing import Iterator, Optional, Tuple

from engine.models import Dir, File, Node, new_root_dir
from engine.paths import get_parent_path, join_path, split_path

logger = logging.getLogger(__name__)


class DirectoryIndex:
    """
    Rooted tree of Dir and File nodes.

    Paths are absolute and never carry a trailing slash ("/dir/file").
    Insert and remove are single dict operations on the parent's children;
    composite operations such as rename sequence them and may briefly expose
    the node at neither location.
    """

    def __init__(self, root: Optional[Dir] = None):
        """
        Initialize the index.

        Args:
            root: Existing root directory (default: a fresh empty root)
        """
        self.root: Dir = root if root is not None else new_root_dir()

    def replace_root(self, root: Dir) -> None:
        """Install a root loaded from a snapshot."""
        self.root = root

    def lookup_node(self, path: str) -> Optional[Node]:
        """
        Resolve a path to its node.

        Args:
            path: Absolute path

        Returns:
            The node, or None if any component is missing or a file is
            encountered before the path is exhausted

        Raises:
            ValueError: If the path is relative or has a trailing slash
        """
        node: Node = self.root
        for name in split_path(path):
            if not isinstance(node, Dir):
                logger.debug(f"Lookup of {path} hit file {node.name} before the end")
                return None
            child = node.children.get(name)
            if child is None:
                return None
            node = child
        return node

    def lookup_parent(self, path: str) -> Optional[Dir]:
        """
        Resolve the directory that would contain `path`.

        Args:
            path: Absolute path, not "/"

        Returns:
            The parent directory, or None if it is missing or not a directory

        Raises:
            ValueError: If path is "/" or malformed
        """
        if path == '/':
            raise ValueError("Cannot look up parent of the root")
        parent = self.lookup_node(get_parent_path(path))
        return parent if isinstance(parent, Dir) else None

    def add_node(self, parent: Dir, node: Node) -> None:
        logger.debug(f"Adding node {node.name} to {parent.name}")
        parent.children[node.name] = node

    def remove_node(self, parent: Dir, node: Node) -> None:
        logger.debug(f"Removing node {node.name} from {parent.name}")
        if parent.children.get(node.name) is node:
            del parent.children[node.name]

    def walk(self) -> Iterator[Tuple[str, Node]]:
        """
        Iterate over every node below the root, depth first.

        Yields:
            (path, node) pairs; the root itself is not yielded
        """
        stack = [('/', self.root)]
        while stack:
            path, directory = stack.pop()
            for name, child in list(directory.children.items()):
                child_path = join_path(path, name)
                yield child_path, child
                if isinstance(child, Dir):
                    stack.append((child_path, child))

    def iter_files(self) -> Iterator[Tuple[str, File]]:
        for path, node in self.walk():
            if isinstance(node, File):
                yield path, node
