"""Shared type definitions (request priorities)."""

from enum import Enum


class Priority(Enum):
    """
    Scheduling class of a remote download.

    Declaration order is service order: workers drain HIGH before LOW.
    """
    HIGH = "high"
    LOW = "low"
