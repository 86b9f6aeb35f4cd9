"""Typed catalog actions on top of CatalogClient."""
from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError

from swatch.client import NO_RETRY, CatalogClient, RetryPolicy
from swatch.errors import CatalogError
from swatch.models import (
    HeartbeatResponse,
    IngestRequest,
    IngestResult,
    PathTestResult,
    RenderJob,
    ScanCheckpoint,
)

logger = logging.getLogger("swatch.catalog")


class Catalog:
    """One method per agent-api action.

    Calls that carry scan results (ingest, progress, render bookkeeping) go
    through `retry`; heartbeat and claim-render are periodic and simply wait
    for their next tick.
    """

    def __init__(self, client: CatalogClient, retry: Optional[RetryPolicy] = None) -> None:
        self.client = client
        self.retry = retry or RetryPolicy()

    def _call(self, action: str, retry: RetryPolicy, **payload: Any) -> dict[str, Any]:
        payload = {k: v for k, v in payload.items() if v is not None}
        return retry.run(lambda: self.client.call(action, **payload), action)

    @staticmethod
    def _parse(action: str, model, data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise CatalogError(action, f"unexpected response: {e}") from e

    # -- identity ---------------------------------------------------------

    def register(self, agent_name: str, agent_type: str = "bridge") -> str:
        data = self._call("register", NO_RETRY, agent_name=agent_name,
                          agent_type=agent_type, agent_key=self.client.agent_key)
        agent_id = data.get("agent_id")
        if not agent_id:
            raise CatalogError("register", "response has no agent_id")
        return agent_id

    def pair(self, pairing_code: str, agent_name: str) -> tuple[str, str]:
        """Exchange a one-time pairing code for (agent_id, agent_key)."""
        data = self._call("pair", NO_RETRY, pairing_code=pairing_code, agent_name=agent_name)
        agent_id, agent_key = data.get("agent_id"), data.get("agent_key")
        if not agent_id or not agent_key:
            raise CatalogError("pair", "response has no agent_id/agent_key")
        return agent_id, agent_key

    # -- control channel --------------------------------------------------

    def heartbeat(
        self,
        agent_id: str,
        counters: dict[str, int],
        last_error: Optional[str] = None,
        **extra: Any,
    ) -> HeartbeatResponse:
        data = self._call("heartbeat", NO_RETRY, agent_id=agent_id, counters=counters,
                          last_error=last_error, **extra)
        return self._parse("heartbeat", HeartbeatResponse, data)

    def report_path_test(self, request_id: str, results: PathTestResult) -> None:
        self._call("report-path-test", self.retry, request_id=request_id,
                   results=results.model_dump(mode="json"))

    # -- ingestion --------------------------------------------------------

    def ingest(self, request: IngestRequest) -> IngestResult:
        data = self._call("ingest", self.retry,
                          **request.model_dump(mode="json", exclude_none=True))
        return self._parse("ingest", IngestResult, data)

    def scan_progress(
        self,
        session_id: str,
        status: str,
        counters: dict[str, int],
        current_path: Optional[str] = None,
        skipped_dirs: Optional[list[str]] = None,
    ) -> None:
        self._call("scan-progress", self.retry, session_id=session_id, status=status,
                   counters=counters, current_path=current_path, skipped_dirs=skipped_dirs)

    # -- render queue -----------------------------------------------------

    def queue_render(self, asset_id: str, reason: str) -> Optional[str]:
        data = self._call("queue-render", self.retry, asset_id=asset_id, reason=reason)
        return data.get("job_id")

    def claim_render(self, agent_id: str) -> Optional[RenderJob]:
        data = self._call("claim-render", NO_RETRY, agent_id=agent_id)
        job = data.get("job")
        if not job or not job.get("job_id"):
            return None
        return self._parse("claim-render", RenderJob, job)

    def complete_render(
        self,
        job_id: str,
        success: bool,
        thumbnail_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self._call("complete-render", self.retry, job_id=job_id, success=success,
                   thumbnail_url=thumbnail_url, error=error)

    # -- checkpoints ------------------------------------------------------

    def get_checkpoint(self) -> Optional[ScanCheckpoint]:
        data = self._call("get-checkpoint", NO_RETRY)
        checkpoint = data.get("checkpoint")
        if not checkpoint:
            return None
        return self._parse("get-checkpoint", ScanCheckpoint, checkpoint)

    def save_checkpoint(self, session_id: str, last_completed_dir: str) -> None:
        self._call("save-checkpoint", NO_RETRY, session_id=session_id,
                   last_completed_dir=last_completed_dir)

    def clear_checkpoint(self) -> None:
        self._call("clear-checkpoint", NO_RETRY)
