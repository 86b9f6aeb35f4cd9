"""File classification: supported design formats, junk files, NAS housekeeping dirs."""
from __future__ import annotations

from typing import Optional

# Extension (lowercase, with dot) -> file type sent to the catalog
SUPPORTED_EXTENSIONS: dict[str, str] = {
    ".psd": "psd",
    ".ai": "ai",
}

# ---------------------------------------------------------------------------
# Directories never traversed (leaf name, case-insensitive).
# Synology/QNAP/macOS/Windows housekeeping that mirrors or shadows real files.
# ---------------------------------------------------------------------------
EXCLUDED_DIR_NAMES: frozenset[str] = frozenset(
    name.lower()
    for name in [
        "@eaDir",  # Synology thumbnail/index cache
        "#recycle",  # Synology recycle bin
        "#snapshot",
        "@Recycle",  # QNAP
        "@Recently-Snapshot",
        ".@__thumb",
        ".Trash",
        ".Trashes",
        ".TemporaryItems",
        ".AppleDouble",
        ".Spotlight-V100",
        ".fseventsd",
        "$RECYCLE.BIN",
        "System Volume Information",
        "lost+found",
    ]
)

EXCLUDED_FILENAMES: frozenset[str] = frozenset(
    """
    .ds_store thumbs.db desktop.ini
    """.split()
)


def classify_file(filename: str) -> Optional[str]:
    """Return 'psd' or 'ai' for supported files (case-insensitive), else None."""
    dot_idx = filename.rfind(".")
    if dot_idx <= 0:
        return None
    return SUPPORTED_EXTENSIONS.get(filename[dot_idx:].lower())


def is_junk_file(filename: str) -> bool:
    """
    Return True for files that carry a supported extension but are not assets:
    AppleDouble resource forks (._name.psd), Office/Adobe lock files (~$name.ai)
    and OS metadata files.
    """
    if filename.startswith("._") or filename.startswith("~$"):
        return True
    return filename.lower() in EXCLUDED_FILENAMES


def is_excluded_dir(dirname: str) -> bool:
    """Return True if this directory should be skipped entirely."""
    lower = dirname.lower()
    if lower in EXCLUDED_DIR_NAMES:
        return True
    # .Trash-1000 and friends (per-uid trash on Linux)
    return lower.startswith(".trash-")
