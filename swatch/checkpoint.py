"""Resumable-scan checkpoints, stored catalog-side (one per agent)."""
from __future__ import annotations

import logging
from typing import Optional

from swatch.errors import CatalogError

logger = logging.getLogger("swatch.checkpoint")

TERMINAL_STATUSES = frozenset({"completed", "failed", "aborted"})


class CheckpointStore:
    """Checkpoint persistence never fails a scan: catalog errors are logged
    and the scan carries on (at worst it restarts from the beginning)."""

    def __init__(self, catalog) -> None:
        self.catalog = catalog

    def load(self, session_id: str) -> Optional[str]:
        """Return the last completed directory for this session, if resumable."""
        try:
            checkpoint = self.catalog.get_checkpoint()
        except CatalogError as e:
            logger.warning("cannot fetch checkpoint, starting fresh: %s", e)
            return None
        if checkpoint is None or not checkpoint.last_completed_dir:
            return None

        if checkpoint.session_id != session_id:
            logger.info("discarding checkpoint from session %s (current %s)",
                        checkpoint.session_id, session_id)
            self.clear()
            return None
        if checkpoint.session_status in TERMINAL_STATUSES:
            logger.info("discarding checkpoint of %s session %s",
                        checkpoint.session_status, session_id)
            self.clear()
            return None

        logger.info("checkpoint found for %s: %s (saved %s)",
                    session_id, checkpoint.last_completed_dir, checkpoint.saved_at)
        return checkpoint.last_completed_dir

    def save(self, session_id: str, directory: str) -> None:
        try:
            self.catalog.save_checkpoint(session_id, directory)
        except CatalogError as e:
            logger.warning("failed to save checkpoint %s: %s", directory, e)

    def clear(self) -> None:
        try:
            self.catalog.clear_checkpoint()
        except CatalogError as e:
            logger.warning("failed to clear checkpoint: %s", e)
