"""Render agent: consumes the render-job queue for files the bridge could not preview."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from typing import Callable, Optional

from PIL import Image

from swatch.catalog import Catalog
from swatch.errors import CatalogError, PreviewError
from swatch.illustrator import DEFAULT_TIMEOUT, CircuitBreaker, render_with_illustrator
from swatch.models import ConfigFragment, RenderJob
from swatch.normalize import resolve_job_path
from swatch.thumbnails import (
    JPEG_QUALITY,
    MAX_DIM,
    Preview,
    find_ghostscript,
    flatten_to_jpeg,
    rasterize_with_ghostscript,
)

logger = logging.getLogger("swatch.render_agent")

SIBLING_EXTENSIONS = (".jpg", ".jpeg", ".png")
RENDER_FAILED = "render_failed"


def find_magick(configured: Optional[str] = None) -> Optional[str]:
    return configured or shutil.which("magick")


def render_with_magick(path: str, magick: str, max_dim: int = MAX_DIM,
                       timeout: float = 120) -> Image.Image:
    with tempfile.TemporaryDirectory(prefix="swatch-magick-") as tmp:
        out = os.path.join(tmp, "thumb.png")
        cmd = [magick, f"{path}[0]", "-background", "white", "-flatten",
               "-resize", f"{max_dim}x{max_dim}>", out]
        try:
            subprocess.run(cmd, check=True, timeout=timeout, capture_output=True)
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"magick exited {e.returncode}") from e
        except subprocess.TimeoutExpired as e:
            raise RuntimeError(f"magick timed out after {timeout}s") from e
        if not os.path.exists(out):
            raise RuntimeError("magick produced no output")
        with Image.open(out) as img:
            img.load()
            return img.copy()


def find_sibling_image(path: str) -> Optional[str]:
    """An image beside the file with the same stem (case-insensitive)."""
    directory = os.path.dirname(path)
    stem = os.path.splitext(os.path.basename(path))[0].lower()
    try:
        names = os.listdir(directory)
    except OSError:
        return None
    by_lower = {name.lower(): name for name in names}
    for ext in SIBLING_EXTENSIONS:
        match = by_lower.get(stem + ext)
        if match:
            return os.path.join(directory, match)
    return None


def _open_sibling(path: str) -> Image.Image:
    sibling = find_sibling_image(path)
    if sibling is None:
        raise RuntimeError("no sibling image")
    logger.info("using sibling image %s", sibling)
    with Image.open(sibling) as img:
        img.load()
        return img.copy()


class RemoteRenderer:
    """Illustrator → Ghostscript → ImageMagick → sibling image."""

    def __init__(
        self,
        cscript: Optional[str] = None,
        breaker: Optional[CircuitBreaker] = None,
        gs_path: Optional[str] = None,
        magick_path: Optional[str] = None,
        max_dim: int = MAX_DIM,
        quality: int = JPEG_QUALITY,
        illustrator_timeout: float = DEFAULT_TIMEOUT,
        gs_timeout: float = 60,
    ) -> None:
        self.cscript = cscript
        self.breaker = breaker or CircuitBreaker()
        self.gs_path = find_ghostscript(gs_path)
        self.magick_path = find_magick(magick_path)
        self.max_dim = max_dim
        self.quality = quality
        self.illustrator_timeout = illustrator_timeout
        self.gs_timeout = gs_timeout

    def _illustrator(self, path: str) -> Image.Image:
        if not self.breaker.available():
            raise RuntimeError("circuit breaker open")
        try:
            image = render_with_illustrator(path, self.cscript, self.illustrator_timeout)
        except Exception:
            self.breaker.record_failure()
            raise
        self.breaker.record_success()
        return image

    def strategies(self, file_type: str) -> list[tuple[str, Callable[[str], Image.Image]]]:
        chain: list[tuple[str, Callable[[str], Image.Image]]] = []
        if self.cscript and file_type == "ai":
            chain.append(("illustrator", self._illustrator))
        if self.gs_path:
            gs, timeout = self.gs_path, self.gs_timeout
            chain.append(("ghostscript", lambda p: rasterize_with_ghostscript(p, gs, timeout)))
        if self.magick_path:
            magick, max_dim = self.magick_path, self.max_dim
            chain.append(("magick", lambda p: render_with_magick(p, magick, max_dim)))
        chain.append(("sibling", _open_sibling))
        return chain

    def render(self, path: str, file_type: str = "ai") -> Preview:
        attempts: list[tuple[str, str]] = []
        for name, strategy in self.strategies(file_type):
            try:
                return flatten_to_jpeg(strategy(path), self.max_dim, self.quality)
            except Exception as e:
                logger.warning("%s render failed for %s: %s", name, path, e)
                attempts.append((name, str(e) or type(e).__name__))
        raise PreviewError(RENDER_FAILED, attempts)


class RenderAgent:
    """Polls claim-render on a fixed interval, one job in flight at a time."""

    def __init__(
        self,
        catalog: Catalog,
        publisher,
        renderer,
        nas_host: str = "",
        nas_share: str = "",
        poll_interval: float = 30,
        mount_root: str = "",
        agent_id: Optional[str] = None,
    ) -> None:
        self.catalog = catalog
        self.publisher = publisher
        self.renderer = renderer
        self.nas_host = nas_host
        self.nas_share = nas_share
        self.poll_interval = poll_interval
        self.mount_root = mount_root
        self.agent_id = agent_id
        self.jobs_completed = 0
        self.jobs_failed = 0
        self.last_error: Optional[str] = None
        self._busy = threading.Lock()
        self._stop = threading.Event()

    # -- config -----------------------------------------------------------

    def apply_config(self, fragment: ConfigFragment) -> None:
        mapping = fragment.windows_agent
        if mapping is not None:
            if mapping.nas_host:
                self.nas_host = mapping.nas_host
            if mapping.nas_share:
                self.nas_share = mapping.nas_share
        if fragment.do_spaces is None:
            return
        try:
            self.publisher.reinitialize(**fragment.do_spaces.model_dump(exclude_none=True))
        except Exception as e:
            logger.error("storage config rejected, keeping current client: %s", e)
            self.last_error = str(e)

    def heartbeat_once(self) -> None:
        extra = {}
        breaker = getattr(self.renderer, "breaker", None)
        if breaker is not None:
            extra["health"] = breaker.status()
        try:
            response = self.catalog.heartbeat(self.agent_id, {}, self.last_error, **extra)
        except CatalogError as e:
            logger.error("heartbeat failed: %s", e)
            self.last_error = str(e)
            return
        if response.config is not None:
            self.apply_config(response.config)

    # -- jobs -------------------------------------------------------------

    def poll_once(self) -> bool:
        """Claim and process at most one job. False if busy or queue empty."""
        if not self._busy.acquire(blocking=False):
            logger.debug("previous job still running, skipping tick")
            return False
        try:
            job = self.catalog.claim_render(self.agent_id)
            if job is None:
                logger.debug("no render jobs available")
                return False
            if not job.relative_path:
                logger.error("claimed job %s has no relative_path", job.job_id)
                self._report_failure(job, "asset missing relative_path")
                return True
            self.process_job(job)
            return True
        except CatalogError as e:
            logger.error("polling error: %s", e)
            self.last_error = str(e)
            return False
        finally:
            self._busy.release()

    def process_job(self, job: RenderJob) -> None:
        logger.info("render job %s for asset %s: %s", job.job_id, job.asset_id, job.relative_path)
        try:
            path = resolve_job_path(
                job.relative_path,
                nas_host=self.nas_host,
                nas_share=self.nas_share,
                mount_root=self.mount_root,
            )
            preview = self.renderer.render(path, job.file_type)
            url = self.publisher.upload(job.asset_id, preview.data)
        except Exception as e:
            logger.error("render job %s failed: %s", job.job_id, e)
            self._report_failure(job, str(e))
            return
        try:
            self.catalog.complete_render(job.job_id, True, thumbnail_url=url)
        except CatalogError as e:
            logger.error("failed to report completion of job %s: %s", job.job_id, e)
            self.last_error = str(e)
            return
        self.jobs_completed += 1
        logger.info("render job %s completed: %s", job.job_id, url)

    def _report_failure(self, job: RenderJob, message: str) -> None:
        self.jobs_failed += 1
        self.last_error = message
        try:
            self.catalog.complete_render(job.job_id, False, error=message)
        except CatalogError as e:
            logger.error("failed to report failure of job %s: %s", job.job_id, e)

    # -- loop -------------------------------------------------------------

    def _tick(self) -> None:
        try:
            self.poll_once()
        except Exception:
            logger.exception("render tick failed")

    def _heartbeat_loop(self, interval: float) -> None:
        while not self._stop.is_set():
            try:
                self.heartbeat_once()
            except Exception:
                logger.exception("heartbeat tick failed")
            self._stop.wait(interval)

    def run(self, heartbeat_interval: float = 30) -> None:
        threading.Thread(target=self._heartbeat_loop, args=(heartbeat_interval,),
                         name="swatch-heartbeat", daemon=True).start()
        logger.info("render agent %s polling every %ss", self.agent_id, self.poll_interval)
        try:
            while not self._stop.is_set():
                # a tick that finds a job still running is skipped by poll_once
                threading.Thread(target=self._tick, name="swatch-render", daemon=True).start()
                self._stop.wait(self.poll_interval)
        finally:
            self._stop.set()

    def stop(self) -> None:
        self._stop.set()
