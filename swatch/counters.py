"""Per-session counters: the agent's primary observability surface."""
from __future__ import annotations

import threading

COUNTER_NAMES: tuple[str, ...] = (
    # traversal
    "files_total_encountered",
    "files_checked",
    "candidates_found",
    "rejected_wrong_type",
    "rejected_junk_file",
    "symlinks_skipped",
    "dirs_skipped_permission",
    "dirs_read_failed",
    "dirs_resumed_skipped",
    "files_stat_failed",
    "files_hash_failed",
    # root validation
    "roots_invalid",
    "roots_outside_boundary",
    "roots_missing",
    "roots_unreadable",
    "roots_not_directory",
    # reconciliation
    "ingested_new",
    "updated_existing",
    "moved_detected",
    "noop_unchanged",
    # previews
    "previews_rendered",
    "previews_failed",
    "previews_uploaded",
    "previews_deferred",
    "render_jobs_queued",
    "errors",
)


class Counters:
    """
    Thread-safe monotonically increasing counters, owned by one scan session.
    Unknown names raise KeyError so typos never silently drop a count.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, int] = dict.fromkeys(COUNTER_NAMES, 0)

    def incr(self, name: str, n: int = 1) -> None:
        if n < 0:
            raise ValueError("counters only increase")
        with self._lock:
            if name not in self._values:
                raise KeyError(name)
            self._values[name] += n

    def get(self, name: str) -> int:
        with self._lock:
            return self._values[name]

    def __getitem__(self, name: str) -> int:
        return self.get(name)

    def reset(self) -> None:
        with self._lock:
            for key in self._values:
                self._values[key] = 0

    def snapshot(self) -> dict[str, int]:
        """Plain dict copy for the wire."""
        with self._lock:
            return dict(self._values)
