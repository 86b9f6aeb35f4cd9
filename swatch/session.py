"""One scan session: validate, traverse, reconcile, report."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from swatch.checkpoint import CheckpointStore
from swatch.cloud_config import CloudConfig, ResourceGuard
from swatch.counters import Counters
from swatch.errors import CatalogError
from swatch.normalize import canonical_relative_path
from swatch.reconciler import Reconciler
from swatch.scanner import DirectoryScanner

logger = logging.getLogger("swatch.session")

PROGRESS_INTERVAL = 2.0     # seconds between mid-scan progress reports
CHECKPOINT_INTERVAL = 5.0   # seconds between checkpoint saves
MAX_SKIPPED_DIRS = 500      # cap on unreadable directories sent with progress

TERMINAL = frozenset({"completed", "failed", "aborted"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScanSession:
    session_id: str
    counters: Counters
    status: str = "running"
    current_path: Optional[str] = None
    started_at: datetime = field(default_factory=_now)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    resumed_from: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL


class ScanRunner:
    """Runs sessions on the calling thread; reconciliation fans out to a pool.

    Traversal stays sequential. At most ``concurrency * 2`` candidates are
    outstanding; every ``batch_size`` submissions the runner drains the pool
    before continuing.
    """

    def __init__(
        self,
        catalog,
        config: CloudConfig,
        counters: Counters,
        renderer,
        publisher,
        checkpoints: Optional[CheckpointStore] = None,
        guard: Optional[ResourceGuard] = None,
        progress_interval: float = PROGRESS_INTERVAL,
        checkpoint_interval: float = CHECKPOINT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.catalog = catalog
        self.config = config
        self.counters = counters
        self.renderer = renderer
        self.publisher = publisher
        self.checkpoints = checkpoints or CheckpointStore(catalog)
        self.guard = guard
        self.progress_interval = progress_interval
        self.checkpoint_interval = checkpoint_interval
        self._clock = clock
        self.last_error: Optional[str] = None

    def run(self, session_id: str, abort: Optional[threading.Event] = None) -> ScanSession:
        abort = abort or threading.Event()
        self.counters.reset()
        session = ScanSession(session_id=session_id, counters=self.counters)
        roots = self.config.roots
        mount_root = self.config.mount_root

        session.resumed_from = self.checkpoints.load(session_id)
        logger.info("scan %s starting: roots=%s resume=%s", session_id, roots,
                    session.resumed_from or "none")

        run = _SessionRun(self, session, abort)
        scanner = DirectoryScanner(
            mount_root,
            self.counters,
            should_abort=abort.is_set,
            on_dir=run.dir_complete,
            resume_from=session.resumed_from,
            on_skip=run.dir_skipped,
        )
        try:
            if not scanner.validate_roots(roots):
                session.status = "failed"
                session.error = "invalid scan roots"
                self.checkpoints.clear()
                return session

            run.report("running", force=True)
            run.traverse(scanner, roots)

            if abort.is_set():
                logger.info("scan %s aborted", session_id)
                session.status = "aborted"
                run.advance_checkpoint(force=True)
            elif self.counters.get("files_checked") == 0 and not session.resumed_from:
                logger.error("scan %s checked 0 files; treating as failure", session_id)
                self.counters.incr("errors")
                session.status = "failed"
                session.error = "no files checked"
            else:
                session.status = "completed"
                self.checkpoints.clear()
        except Exception as e:
            logger.exception("scan %s failed", session_id)
            session.status = "failed"
            session.error = str(e)
            run.advance_checkpoint(force=True)
        finally:
            session.finished_at = _now()
            if session.error:
                self.last_error = session.error
            run.report(session.status, force=True)
            logger.info("scan %s %s: %s", session_id, session.status,
                        self.counters.snapshot())
        return session


class _SessionRun:
    """Per-run mutable state; only touched from the session thread."""

    def __init__(self, runner: ScanRunner, session: ScanSession, abort: threading.Event) -> None:
        self.runner = runner
        self.session = session
        self.abort = abort
        self.pending: set[Future] = set()
        # (directory, futures outstanding when it completed)
        self.marks: deque[tuple[str, frozenset[Future]]] = deque()
        self.safe_dir: Optional[str] = None
        self.skipped_dirs: list[str] = []
        self.saved_dir: Optional[str] = None
        self._last_progress = float("-inf")
        self._last_checkpoint = float("-inf")

    # -- traversal --------------------------------------------------------

    def traverse(self, scanner: DirectoryScanner, roots: list[str]) -> None:
        runner = self.runner
        concurrency = runner.config.concurrency
        batch_size = runner.config.batch_size
        reconciler = Reconciler(
            runner.catalog, runner.renderer, runner.publisher, runner.counters,
            config=runner.config, should_abort=self.abort.is_set,
        )
        submitted = 0
        with ThreadPoolExecutor(max_workers=concurrency,
                                thread_name_prefix="swatch-ingest") as pool:
            try:
                for candidate in scanner.scan(roots):
                    if runner.guard is not None:
                        runner.guard.throttle(self.abort.is_set)
                    if self.abort.is_set():
                        break
                    while len(self.pending) >= concurrency * 2:
                        self._settle(wait(self.pending, return_when=FIRST_COMPLETED).done)
                    self.pending.add(pool.submit(reconciler.process, candidate))
                    submitted += 1
                    self.session.current_path = candidate.relative_path

                    if submitted % batch_size == 0:
                        self._settle(wait(self.pending).done)
                        self.advance_checkpoint()
                    self.report("running")
            finally:
                # in-flight work always runs to completion
                self._settle(wait(self.pending).done)
        if reconciler.last_error:
            runner.last_error = reconciler.last_error
        self.advance_checkpoint()

    def _settle(self, done: set[Future]) -> None:
        for future in done:
            self.pending.discard(future)
            exc = future.exception()
            if exc is not None:
                logger.error("reconcile worker failed: %r", exc)
                self.runner.counters.incr("errors")
                self.runner.last_error = str(exc)

    def dir_skipped(self, path: str, reason: str) -> None:
        logger.debug("skipped %s (%s)", path, reason)
        if len(self.skipped_dirs) < MAX_SKIPPED_DIRS:
            self.skipped_dirs.append(
                canonical_relative_path(path, self.runner.config.mount_root)
            )

    # -- checkpoints ------------------------------------------------------

    def dir_complete(self, path: str) -> None:
        self.marks.append((path, frozenset(self.pending)))
        self.advance_checkpoint()

    def advance_checkpoint(self, force: bool = False) -> None:
        """Save the newest directory whose submitted work has all finished."""
        while self.marks and all(f.done() for f in self.marks[0][1]):
            self.safe_dir = self.marks.popleft()[0]
        if self.safe_dir is None or self.safe_dir == self.saved_dir:
            return
        now = self.runner._clock()
        if not force and now - self._last_checkpoint < self.runner.checkpoint_interval:
            return
        self._last_checkpoint = now
        self.saved_dir = self.safe_dir
        self.runner.checkpoints.save(self.session.session_id, self.safe_dir)

    # -- progress ---------------------------------------------------------

    def report(self, status: str, force: bool = False) -> None:
        now = self.runner._clock()
        if not force and now - self._last_progress < self.runner.progress_interval:
            return
        self._last_progress = now
        try:
            self.runner.catalog.scan_progress(
                self.session.session_id,
                status,
                self.runner.counters.snapshot(),
                current_path=self.session.current_path,
                skipped_dirs=list(self.skipped_dirs) or None,
            )
        except CatalogError as e:
            logger.warning("progress report failed: %s", e)
            self.runner.last_error = str(e)
