"""Helpers for absolute, slash-separated index paths."""

from typing import List


def _check_path(path: str) -> None:
    if not path.startswith('/'):
        raise ValueError(f"Path is not absolute: {path}")
    if path != '/' and path.endswith('/'):
        raise ValueError(f"Path has trailing slash: {path}")


def split_path(path: str) -> List[str]:
    """
    Split a path into its components.

    Args:
        path: Absolute path such as "/dir/file"

    Returns:
        Components in order; empty list for "/"

    Raises:
        ValueError: If the path is relative or has a trailing slash
    """
    _check_path(path)
    return [part for part in path.split('/') if part]


def get_parent_path(path: str) -> str:
    _check_path(path)
    parent = path[:path.rfind('/')]
    return parent or '/'


def get_node_name(path: str) -> str:
    _check_path(path)
    return path[path.rfind('/') + 1:]


def join_path(parent: str, name: str) -> str:
    if parent == '/':
        return f"/{name}"
    return f"{parent}/{name}"


def is_within(path: str, ancestor: str) -> bool:
    """True if `path` equals `ancestor` or lies below it."""
    if ancestor == '/':
        return True
    return path == ancestor or path.startswith(ancestor + '/')
