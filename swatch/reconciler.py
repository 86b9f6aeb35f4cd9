"""Per-candidate ingestion: fingerprint, ingest, preview follow-up."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from swatch.counters import Counters
from swatch.errors import CatalogError, FingerprintError, PreviewError, StorageError
from swatch.fingerprint import quick_fingerprint
from swatch.models import FileCandidate, IngestRequest, IngestResult
from swatch.thumbnails import NO_PDF_COMPAT

logger = logging.getLogger("swatch.reconciler")

ACTION_COUNTERS = {
    "created": "ingested_new",
    "updated": "updated_existing",
    "moved": "moved_detected",
    "unchanged": "noop_unchanged",
    "noop": "noop_unchanged",
}
# New content always needs a preview; a moved or unchanged asset keeps the one
# it has unless the catalog sets needs_preview.
PREVIEW_ACTIONS = frozenset({"created", "updated"})

DEFERRED = "deferred_to_windows_agent"
UPLOAD_FAILED = "upload_failed"
LOCAL_FAILED = "local_thumb_failed"


def offload_reason(config, candidate: FileCandidate, digest: str) -> Optional[str]:
    """Queue reason when the render agent should make this preview instead of
    rendering locally, else None.

    primary mode offloads everything. shared mode offloads eligible types while
    the render agent is healthy and its queue has room, for files at least
    shared_min_mb large or a stable shared_percent sample keyed on the digest.
    """
    if config is None:
        return None
    mode = config.render_mode
    if mode == "primary":
        return "primary_mode"
    policy = config.render_policy
    if mode != "shared" or policy is None:
        return None
    if candidate.file_type not in policy.shared_types:
        return None
    if policy.require_windows_healthy and not config.render_agent_healthy:
        return None
    if config.pending_render_jobs >= policy.max_pending_jobs:
        return None
    large = policy.shared_min_mb > 0 and candidate.size_bytes >= policy.shared_min_mb * 1024 * 1024
    sampled = int(digest[:8], 16) % 100 < policy.shared_percent
    return "shared_offload" if large or sampled else None


class Reconciler:
    """Reports one candidate to the catalog.

    The catalog decides what the file is (new, moved, updated, unchanged);
    this side only supplies the fingerprint and metadata, then attaches a
    preview when the catalog's answer calls for one.
    """

    def __init__(
        self,
        catalog,
        renderer,
        publisher,
        counters: Counters,
        config=None,
        should_abort: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.catalog = catalog
        self.renderer = renderer
        self.publisher = publisher
        self.counters = counters
        self.config = config
        self.should_abort = should_abort or (lambda: False)
        self._error_lock = threading.Lock()
        self.last_error: Optional[str] = None

    def _record_error(self, message: str) -> None:
        self.counters.incr("errors")
        with self._error_lock:
            self.last_error = message

    def process(self, candidate: FileCandidate) -> Optional[IngestResult]:
        """Returns the ingest result, or None if the candidate was dropped."""
        min_date = self.config.scan_min_date if self.config is not None else None
        if min_date is not None and candidate.modified_at < min_date:
            self.counters.incr("noop_unchanged")
            return None

        try:
            fingerprint = quick_fingerprint(candidate.absolute_path)
        except FingerprintError as e:
            logger.warning("%s", e)
            self.counters.incr("files_hash_failed")
            return None

        request = IngestRequest(
            relative_path=candidate.relative_path,
            filename=candidate.filename,
            file_type=candidate.file_type,
            file_size=candidate.size_bytes,
            modified_at=candidate.modified_at,
            file_created_at=candidate.created_at,
            quick_hash=fingerprint.digest,
            quick_hash_version=fingerprint.version,
        )
        try:
            result = self.catalog.ingest(request)
        except CatalogError as e:
            logger.error("ingest failed for %s: %s", candidate.relative_path, e)
            self._record_error(str(e))
            return None

        counter = ACTION_COUNTERS.get(result.action)
        if counter is None:
            logger.warning("unknown ingest action %r for %s", result.action,
                           candidate.relative_path)
        else:
            self.counters.incr(counter)
        logger.debug("%s %s -> %s", result.action, candidate.relative_path, result.asset_id)

        if result.action in PREVIEW_ACTIONS or result.needs_preview:
            self._attach_preview(candidate, request, result)
        return result

    def _attach_preview(
        self, candidate: FileCandidate, request: IngestRequest, result: IngestResult
    ) -> None:
        if self.should_abort():
            return
        update: dict = {}
        queue_reason = offload_reason(self.config, candidate, request.quick_hash)
        if queue_reason is not None:
            logger.debug("preview for %s deferred to render agent (%s)",
                         candidate.relative_path, queue_reason)
            self.counters.incr("previews_deferred")
            update["thumbnail_error"] = DEFERRED
        else:
            try:
                preview = self.renderer.render(candidate.absolute_path, candidate.file_type)
            except PreviewError as e:
                logger.info("no preview for %s: %s", candidate.relative_path, e)
                self.counters.incr("previews_failed")
                update["thumbnail_error"] = e.reason
            else:
                self.counters.incr("previews_rendered")
                try:
                    url = self.publisher.upload(result.asset_id, preview.data)
                except StorageError as e:
                    logger.error("%s", e)
                    self._record_error(str(e))
                    update["thumbnail_error"] = UPLOAD_FAILED
                else:
                    self.counters.incr("previews_uploaded")
                    update.update(thumbnail_url=url, width=preview.width, height=preview.height)
            if "thumbnail_error" in update:
                queue_reason = self._fallback_reason(update["thumbnail_error"])

        try:
            self.catalog.ingest(request.model_copy(update=update))
        except CatalogError as e:
            logger.error("preview report failed for %s: %s", candidate.relative_path, e)
            self._record_error(str(e))

        if queue_reason is not None:
            self._queue_render(result.asset_id, queue_reason,
                               deferred=update.get("thumbnail_error") == DEFERRED)

    def _fallback_reason(self, error: str) -> Optional[str]:
        """Queue reason after a local failure, or None to leave the asset without a preview."""
        policy = self.config.render_policy if self.config is not None else None
        if policy is not None and policy.final_fallback_on_local_failure:
            return LOCAL_FAILED
        if error == NO_PDF_COMPAT:
            return NO_PDF_COMPAT
        return None

    def _queue_render(self, asset_id: str, reason: str, deferred: bool = False) -> None:
        try:
            job_id = self.catalog.queue_render(asset_id, reason)
        except CatalogError as e:
            logger.error("queue-render failed for %s: %s", asset_id, e)
            self._record_error(str(e))
            return
        self.counters.incr("render_jobs_queued")
        if deferred:
            self.config.note_render_queued()
        logger.info("queued remote render for %s (%s, job %s)", asset_id, reason, job_id)
