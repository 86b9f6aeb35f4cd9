"""Quick fingerprint: bounded-cost SHA-256 over head + tail + size.

Used for identity and move detection, not integrity. Two files with the same
first and last window and the same size produce the same digest.
"""
from __future__ import annotations

import hashlib
import os
import struct
from dataclasses import dataclass
from typing import BinaryIO

from swatch.errors import FingerprintError

FINGERPRINT_VERSION = 1
WINDOW_SIZE = 64 * 1024  # 64 KiB


@dataclass(frozen=True)
class Fingerprint:
    digest: str
    version: int = FINGERPRINT_VERSION

    def matches(self, other: "Fingerprint", size: int, other_size: int) -> bool:
        """Equal digest + size means identical content. A version mismatch is never a match."""
        if self.version != other.version:
            return False
        return self.digest == other.digest and size == other_size


def read_windows(f: BinaryIO, size: int, window: int = WINDOW_SIZE) -> list[bytes]:
    """
    Return the byte windows that make up the fingerprint.

    - size <= window:          the whole file
    - window < size <= 2*window: the whole file, head then remainder
    - size > 2*window:         first window + last window
    """
    head = f.read(window)
    if size <= window:
        return [head]
    if size <= 2 * window:
        return [head, f.read(size - len(head))]
    f.seek(size - window)
    return [head, f.read(window)]


def quick_fingerprint(path: str, window: int = WINDOW_SIZE) -> Fingerprint:
    """
    Compute the fingerprint of the file at path.
    Raises FingerprintError on any read failure (caller counts and skips).
    """
    h = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            for chunk in read_windows(f, size, window):
                h.update(chunk)
    except OSError as e:
        raise FingerprintError(f"cannot fingerprint {path}: {e.strerror or e}") from e
    h.update(struct.pack("<Q", size))
    return Fingerprint(h.hexdigest(), FINGERPRINT_VERSION)
