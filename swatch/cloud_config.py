"""Process-wide handle for configuration pushed by the catalog.

Fragments arrive with each heartbeat and are merged field by field: a value
that is missing, empty or zero in the fragment never blanks the current one.
Readers go through the getters, which resolve cloud value → local override →
built-in default.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from swatch.models import ConfigFragment, RenderPolicy

logger = logging.getLogger("swatch.cloud_config")

DEFAULT_BATCH_SIZE = 100
DEFAULT_CONCURRENCY = 2
DEFAULT_IDLE_SECONDS = 30
DEFAULT_ACTIVE_SECONDS = 5
DEFAULT_AUTO_SCAN_HOURS = 6.0
RENDER_MODES = frozenset({"fallback_only", "primary", "shared"})


class CloudConfig:
    def __init__(
        self,
        mount_root: str = "/mnt/nas",
        roots: Optional[list[str]] = None,
        batch_size: int = 0,
        concurrency: int = 0,
        nas_host: str = "",
        nas_share: str = "",
    ) -> None:
        self._lock = threading.Lock()
        # local overrides (0 / empty = defer)
        self._local_mount_root = mount_root
        self._local_roots = list(roots or [])
        self._local_batch_size = batch_size
        self._local_concurrency = concurrency
        # cloud values (None = not pushed yet)
        self._mount_root: Optional[str] = None
        self._roots: Optional[list[str]] = None
        self._batch_size: Optional[int] = None
        self._concurrency: Optional[int] = None
        self._scan_min_date: Optional[datetime] = None
        self._idle_seconds: Optional[int] = None
        self._active_seconds = DEFAULT_ACTIVE_SECONDS
        self._cpu_limit: Optional[int] = None
        self._memory_limit_mb: Optional[int] = None
        self._auto_scan_enabled = False
        self._auto_scan_hours = DEFAULT_AUTO_SCAN_HOURS
        self._nas_host = nas_host
        self._nas_share = nas_share
        self._render_mode = "fallback_only"
        self._render_policy: Optional[RenderPolicy] = None
        self._render_agent_healthy = False
        self._pending_render_jobs = 0

    @classmethod
    def from_settings(cls, settings) -> "CloudConfig":
        return cls(
            mount_root=settings.mount_root,
            roots=settings.roots,
            batch_size=settings.batch_size,
            concurrency=settings.concurrency,
            nas_host=settings.nas_host,
            nas_share=settings.nas_share,
        )

    def apply(self, fragment: ConfigFragment) -> None:
        """Merge a heartbeat config fragment. Storage credentials are not kept
        here; the storage publisher owns them."""
        with self._lock:
            scanning = fragment.scanning
            if scanning is not None:
                if scanning.container_mount_root:
                    self._mount_root = scanning.container_mount_root
                if scanning.roots:
                    self._roots = list(scanning.roots)
                if scanning.batch_size and scanning.batch_size > 0:
                    self._batch_size = scanning.batch_size
                if scanning.scan_min_date:
                    min_date = scanning.scan_min_date
                    if min_date.tzinfo is None:
                        min_date = min_date.replace(tzinfo=timezone.utc)
                    self._scan_min_date = min_date
                polling = scanning.adaptive_polling
                if polling is not None:
                    if polling.idle_seconds > 0:
                        self._idle_seconds = polling.idle_seconds
                    if polling.active_seconds > 0:
                        self._active_seconds = polling.active_seconds

            guard = fragment.resource_guard
            if guard is not None:
                if guard.concurrency and guard.concurrency > 0:
                    self._concurrency = guard.concurrency
                if guard.cpu_percentage_limit and guard.cpu_percentage_limit > 0:
                    self._cpu_limit = guard.cpu_percentage_limit
                if guard.memory_limit_mb and guard.memory_limit_mb > 0:
                    self._memory_limit_mb = guard.memory_limit_mb

            auto = fragment.auto_scan
            if auto is not None:
                self._auto_scan_enabled = auto.enabled
                if auto.interval_hours and auto.interval_hours > 0:
                    self._auto_scan_hours = auto.interval_hours

            render = fragment.windows_agent
            if render is not None:
                if render.nas_host:
                    self._nas_host = render.nas_host
                if render.nas_share:
                    self._nas_share = render.nas_share

            if fragment.windows_render_mode in RENDER_MODES:
                self._render_mode = fragment.windows_render_mode
            if fragment.windows_render_policy is not None:
                self._render_policy = fragment.windows_render_policy
                logger.info("render policy updated: mode=%s", self._render_policy.mode)
            if fragment.windows_healthy is not None:
                self._render_agent_healthy = fragment.windows_healthy
            if fragment.pending_render_jobs is not None:
                self._pending_render_jobs = max(0, fragment.pending_render_jobs)

    # -- scanning ---------------------------------------------------------

    @property
    def mount_root(self) -> str:
        with self._lock:
            return self._mount_root or self._local_mount_root

    @property
    def roots(self) -> list[str]:
        with self._lock:
            return list(self._roots or self._local_roots)

    @property
    def batch_size(self) -> int:
        with self._lock:
            return self._batch_size or self._local_batch_size or DEFAULT_BATCH_SIZE

    @property
    def concurrency(self) -> int:
        with self._lock:
            return self._concurrency or self._local_concurrency or DEFAULT_CONCURRENCY

    @property
    def scan_min_date(self) -> Optional[datetime]:
        with self._lock:
            return self._scan_min_date

    def poll_interval(self, scan_active: bool, idle_default: float = DEFAULT_IDLE_SECONDS) -> float:
        """Heartbeat cadence; idle_default applies until the catalog pushes one."""
        with self._lock:
            if scan_active:
                return self._active_seconds
            return self._idle_seconds or idle_default

    # -- resource guard ---------------------------------------------------

    @property
    def cpu_limit(self) -> Optional[int]:
        with self._lock:
            return self._cpu_limit

    @property
    def memory_limit_mb(self) -> Optional[int]:
        with self._lock:
            return self._memory_limit_mb

    # -- auto-scan --------------------------------------------------------

    @property
    def auto_scan_enabled(self) -> bool:
        with self._lock:
            return self._auto_scan_enabled

    @property
    def auto_scan_interval(self) -> float:
        """Seconds between automatic scans."""
        with self._lock:
            return self._auto_scan_hours * 3600

    # -- render agent -----------------------------------------------------

    @property
    def nas_host(self) -> str:
        with self._lock:
            return self._nas_host

    @property
    def nas_share(self) -> str:
        with self._lock:
            return self._nas_share

    @property
    def render_policy(self) -> Optional[RenderPolicy]:
        with self._lock:
            return self._render_policy

    @property
    def render_mode(self) -> str:
        with self._lock:
            if self._render_policy is not None:
                return self._render_policy.mode
            return self._render_mode

    @property
    def render_agent_healthy(self) -> bool:
        with self._lock:
            return self._render_agent_healthy

    @property
    def pending_render_jobs(self) -> int:
        with self._lock:
            return self._pending_render_jobs

    def note_render_queued(self) -> None:
        """Local estimate until the next heartbeat reports the real queue depth."""
        with self._lock:
            self._pending_render_jobs += 1


def _cpu_load_percent() -> Optional[float]:
    """1-minute load average per CPU, as a percentage."""
    try:
        load1, _, _ = os.getloadavg()
    except (AttributeError, OSError):
        return None
    return load1 / (os.cpu_count() or 1) * 100


def _rss_mb() -> Optional[float]:
    try:
        with open("/proc/self/statm") as f:
            pages = int(f.read().split()[1])
        return pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)
    except (OSError, ValueError, IndexError):
        # no /proc (macOS, Windows): memory limit is not enforced
        return None


class ResourceGuard:
    """Hold back new work while the host is over the configured limits.

    Never touches work already in flight; only delays the next submission.
    """

    def __init__(
        self,
        config: CloudConfig,
        step: float = 1.0,
        max_wait: float = 60.0,
        cpu_reading: Callable[[], Optional[float]] = _cpu_load_percent,
        rss_reading: Callable[[], Optional[float]] = _rss_mb,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.step = step
        self.max_wait = max_wait
        self._cpu_reading = cpu_reading
        self._rss_reading = rss_reading
        self._sleep = sleep

    def over_limit(self) -> Optional[str]:
        cpu_limit = self.config.cpu_limit
        if cpu_limit:
            cpu = self._cpu_reading()
            if cpu is not None and cpu > cpu_limit:
                return f"cpu {cpu:.0f}% > {cpu_limit}%"
        mem_limit = self.config.memory_limit_mb
        if mem_limit:
            rss = self._rss_reading()
            if rss is not None and rss > mem_limit:
                return f"rss {rss:.0f}MB > {mem_limit}MB"
        return None

    def throttle(self, should_abort: Optional[Callable[[], bool]] = None) -> float:
        """Sleep in short steps while over limit, up to max_wait. Returns seconds waited."""
        waited = 0.0
        reason = self.over_limit()
        if reason:
            logger.debug("throttling: %s", reason)
        while reason and waited < self.max_wait:
            if should_abort is not None and should_abort():
                break
            self._sleep(self.step)
            waited += self.step
            reason = self.over_limit()
        return waited
