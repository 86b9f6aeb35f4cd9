"""Catalog wire models (pydantic) and the scanner's FileCandidate record."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Scanner output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FileCandidate:
    absolute_path: str
    relative_path: str  # forward slashes, no leading separator
    filename: str
    file_type: str  # 'psd' | 'ai'
    size_bytes: int
    modified_at: datetime
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Heartbeat: config fragments pushed by the catalog
# ---------------------------------------------------------------------------

class StorageFragment(BaseModel):
    key: Optional[str] = None
    secret: Optional[str] = None
    bucket: Optional[str] = None
    region: Optional[str] = None
    endpoint: Optional[str] = None


class AdaptivePolling(BaseModel):
    idle_seconds: int = 30
    active_seconds: int = 5


class ScanningFragment(BaseModel):
    container_mount_root: Optional[str] = None
    roots: list[str] = []
    batch_size: Optional[int] = None
    scan_min_date: Optional[datetime] = None
    adaptive_polling: Optional[AdaptivePolling] = None


class ResourceGuardFragment(BaseModel):
    cpu_percentage_limit: Optional[int] = None
    memory_limit_mb: Optional[int] = None
    concurrency: Optional[int] = None


class AutoScanFragment(BaseModel):
    enabled: bool = False
    interval_hours: Optional[float] = None


class RenderAgentFragment(BaseModel):
    nas_host: Optional[str] = None
    nas_share: Optional[str] = None


class RenderPolicy(BaseModel):
    mode: str = "fallback_only"  # 'fallback_only' | 'primary' | 'shared'
    shared_types: list[str] = []
    require_windows_healthy: bool = True
    max_pending_jobs: int = 50
    shared_min_mb: float = 0
    shared_percent: int = 0
    final_fallback_on_local_failure: bool = False


class ConfigFragment(BaseModel):
    do_spaces: Optional[StorageFragment] = None
    scanning: Optional[ScanningFragment] = None
    resource_guard: Optional[ResourceGuardFragment] = None
    auto_scan: Optional[AutoScanFragment] = None
    windows_agent: Optional[RenderAgentFragment] = None
    windows_render_mode: Optional[str] = None  # legacy; the policy takes precedence
    windows_render_policy: Optional[RenderPolicy] = None
    windows_healthy: Optional[bool] = None
    pending_render_jobs: Optional[int] = None


# ---------------------------------------------------------------------------
# Heartbeat: commands
# ---------------------------------------------------------------------------

class PathTestRequest(BaseModel):
    request_id: str
    container_mount_root: str
    scan_roots: list[str] = []


class Commands(BaseModel):
    force_scan: bool = False
    scan_session_id: Optional[str] = None
    abort_scan: bool = False
    test_paths: Optional[PathTestRequest] = None


class HeartbeatResponse(BaseModel):
    config: Optional[ConfigFragment] = None
    commands: Optional[Commands] = None


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------

class IngestRequest(BaseModel):
    relative_path: str
    filename: str
    file_type: str
    file_size: int
    modified_at: datetime
    file_created_at: Optional[datetime] = None
    quick_hash: str
    quick_hash_version: int
    thumbnail_url: Optional[str] = None
    thumbnail_error: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class IngestResult(BaseModel):
    action: str  # 'created' | 'updated' | 'moved' | 'noop'
    asset_id: str
    needs_preview: bool = False


# ---------------------------------------------------------------------------
# Render queue, checkpoints, path tests
# ---------------------------------------------------------------------------

class RenderJob(BaseModel):
    job_id: str
    asset_id: str
    relative_path: Optional[str] = None
    file_type: str = "ai"
    filename: str = ""
    status: str = "claimed"


class ScanCheckpoint(BaseModel):
    session_id: str
    last_completed_dir: str
    saved_at: Optional[datetime] = None
    session_status: Optional[str] = None


class ScanRootResult(BaseModel):
    path: str
    valid: bool
    file_count: Optional[int] = None
    error: Optional[str] = None


class PathTestResult(BaseModel):
    mount_root_valid: bool
    scan_root_results: list[ScanRootResult]
