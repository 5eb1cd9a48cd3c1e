"""
Utility functions for file system operations and filename handling.

This module provides helper functions for:
- Ensuring directory creation with proper error handling
- Splitting storage keys into stem and extension
- Validating user-supplied image names before they reach storage
"""

from __future__ import annotations

import math
from fractions import Fraction
from pathlib import Path, PurePosixPath


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    This is a safe idempotent operation that won't fail if the directory
    already exists.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a storage key or filename into stem and extension components.

    Storage keys always use forward slashes, regardless of the host OS.

    Example:
        >>> split_extension("photos/2024/IMG_0001.JPG")
        ("IMG_0001", ".JPG")
    """
    path = PurePosixPath(filename)
    return path.stem, path.suffix


def key_basename(key: str) -> str:
    """Last component of a storage key."""
    return PurePosixPath(key).name


def is_safe_image_name(name: str) -> bool:
    """
    Check that a single path component cannot escape its directory.

    Example:
        >>> is_safe_image_name("IMG_0001.jpg")
        True
        >>> is_safe_image_name("../secrets.txt")
        False
    """
    if not name or name in {".", ".."}:
        return False
    return ".." not in name and "/" not in name and "\\" not in name


def round_half_up(value) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3)."""
    return int(math.floor(value + Fraction(1, 2)))
