"""Directory scanner: root validation and lazy candidate traversal."""
from __future__ import annotations

import logging
import os
import stat
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from swatch.classify import classify_file, is_excluded_dir, is_junk_file
from swatch.counters import Counters
from swatch.models import FileCandidate, PathTestRequest, PathTestResult, ScanRootResult
from swatch.normalize import clean_path, canonical_relative_path, is_under_boundary

logger = logging.getLogger("swatch.scanner")


def _name_key(name: str) -> tuple[str, str]:
    # Case-insensitive order, ties broken by the exact name so it stays total
    return (name.lower(), name)


def _to_utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _birth_time(st: os.stat_result) -> Optional[datetime]:
    birth = getattr(st, "st_birthtime", None)
    if not birth:
        return None
    return _to_utc(birth)


class DirectoryScanner:
    """Depth-first, pre-order walk of the scan roots.

    Directories are visited in sorted order and each directory's own files
    are yielded before any of its subdirectories are entered, so directories
    complete in ascending order of their traversal key
    ``(root_index, name keys...)``. A resume point is therefore a single
    directory: everything with a key up to and including it is done.
    """

    def __init__(
        self,
        mount_root: str,
        counters: Counters,
        should_abort: Optional[Callable[[], bool]] = None,
        on_dir: Optional[Callable[[str], None]] = None,
        resume_from: Optional[str] = None,
        on_skip: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.mount_root = mount_root
        self.counters = counters
        self.should_abort = should_abort or (lambda: False)
        self.on_dir = on_dir
        self.resume_from = resume_from
        self.on_skip = on_skip
        self.current_path: Optional[str] = None

    # -- validation -------------------------------------------------------

    def validate_roots(self, roots: list[str]) -> bool:
        """Check every root before traversal; False means do not scan."""
        if not roots:
            logger.error("no scan roots configured")
            self.counters.incr("roots_invalid")
            return False

        all_valid = True
        for root in roots:
            failure = self._check_root(root)
            if failure is None:
                continue
            counter, message = failure
            logger.error("scan root %s: %s", root, message)
            self.counters.incr(counter)
            self.counters.incr("roots_invalid")
            all_valid = False
        return all_valid

    def _check_root(self, root: str) -> Optional[tuple[str, str]]:
        if not os.path.isabs(root) or not is_under_boundary(root, self.mount_root):
            return "roots_outside_boundary", f"outside mount root {self.mount_root}"
        try:
            st = os.stat(root)
        except FileNotFoundError:
            return "roots_missing", "does not exist"
        except OSError as e:
            return "roots_unreadable", e.strerror or str(e)
        if not stat.S_ISDIR(st.st_mode):
            return "roots_not_directory", "not a directory"
        try:
            with os.scandir(root):
                pass
        except OSError as e:
            return "roots_unreadable", e.strerror or str(e)
        return None

    # -- traversal --------------------------------------------------------

    def _resume_key(self, roots: list[str]) -> Optional[tuple]:
        if not self.resume_from:
            return None
        target = clean_path(self.resume_from)
        for idx, root in enumerate(roots):
            if is_under_boundary(target, root):
                rel = target[len(clean_path(root)):].strip("/")
                parts = rel.split("/") if rel else []
                return (idx, *(_name_key(p) for p in parts))
        logger.warning("checkpoint %s is not under any scan root; starting over",
                       self.resume_from)
        return None

    def scan(self, roots: list[str]) -> Iterator[FileCandidate]:
        resume_key = self._resume_key(roots)
        if resume_key is not None:
            logger.info("resuming after %s", self.resume_from)

        for idx, root in enumerate(roots):
            stack: list[tuple[str, tuple]] = [(clean_path(root), (idx,))]
            while stack:
                if self.should_abort():
                    return
                path, key = stack.pop()
                self.current_path = path

                done = resume_key is not None and key <= resume_key
                on_resume_path = done and resume_key[:len(key)] == key
                if done and not on_resume_path:
                    # whole subtree finished in an earlier run
                    self.counters.incr("dirs_resumed_skipped")
                    continue

                entries = self._list_dir(path)
                if entries is None:
                    continue

                subdirs: list[tuple[str, tuple]] = []
                for entry in entries:
                    if self.should_abort():
                        return
                    try:
                        if entry.is_symlink():
                            self.counters.incr("symlinks_skipped")
                            continue
                        is_dir = entry.is_dir(follow_symlinks=False)
                        is_file = not is_dir and entry.is_file(follow_symlinks=False)
                    except OSError as e:
                        logger.debug("cannot inspect %s: %s", entry.path, e)
                        self.counters.incr("files_stat_failed")
                        continue

                    if is_dir:
                        if is_excluded_dir(entry.name):
                            logger.debug("excluded dir %s", entry.path)
                            continue
                        subdirs.append((entry.path, key + (_name_key(entry.name),)))
                    elif is_file and not done:
                        candidate = self._candidate(entry)
                        if candidate is not None:
                            yield candidate

                if done:
                    self.counters.incr("dirs_resumed_skipped")
                elif self.on_dir is not None:
                    self.on_dir(path)

                # reversed so the smallest name is popped first
                stack.extend(reversed(subdirs))

    def _list_dir(self, path: str) -> Optional[list[os.DirEntry]]:
        try:
            with os.scandir(path) as it:
                entries = list(it)
        except PermissionError:
            logger.warning("permission denied, skipping %s", path)
            self.counters.incr("dirs_skipped_permission")
            self._skipped(path, "permission_denied")
            return None
        except OSError as e:
            logger.warning("cannot read directory %s: %s", path, e)
            self.counters.incr("dirs_read_failed")
            self._skipped(path, "read_failed")
            return None
        entries.sort(key=lambda e: _name_key(e.name))
        return entries

    def _skipped(self, path: str, reason: str) -> None:
        if self.on_skip is not None:
            self.on_skip(path, reason)

    def _candidate(self, entry: os.DirEntry) -> Optional[FileCandidate]:
        self.counters.incr("files_total_encountered")
        name = entry.name
        if is_junk_file(name):
            self.counters.incr("rejected_junk_file")
            return None
        file_type = classify_file(name)
        if file_type is None:
            self.counters.incr("rejected_wrong_type")
            return None

        self.counters.incr("files_checked")
        try:
            st = entry.stat(follow_symlinks=False)
        except OSError as e:
            logger.warning("stat failed for %s: %s", entry.path, e)
            self.counters.incr("files_stat_failed")
            return None

        self.counters.incr("candidates_found")
        return FileCandidate(
            absolute_path=entry.path,
            relative_path=canonical_relative_path(entry.path, self.mount_root),
            filename=name,
            file_type=file_type,
            size_bytes=st.st_size,
            modified_at=_to_utc(st.st_mtime),
            created_at=_birth_time(st),
        )


def check_paths(request: PathTestRequest) -> PathTestResult:
    """Check a proposed mount root and scan roots without scanning them."""
    mount_root_valid = os.path.isdir(request.container_mount_root)
    results: list[ScanRootResult] = []
    for root in request.scan_roots:
        if not os.path.exists(root):
            results.append(ScanRootResult(path=root, valid=False, error="not found"))
            continue
        if not os.path.isdir(root):
            results.append(ScanRootResult(path=root, valid=False,
                                          error="exists but is not a directory"))
            continue
        try:
            with os.scandir(root) as it:
                count = sum(1 for _ in it)
        except PermissionError:
            results.append(ScanRootResult(path=root, valid=False, error="permission denied"))
            continue
        except OSError as e:
            results.append(ScanRootResult(path=root, valid=False, error=str(e)))
            continue
        results.append(ScanRootResult(path=root, valid=True, file_count=count))
    return PathTestResult(mount_root_valid=mount_root_valid, scan_root_results=results)
