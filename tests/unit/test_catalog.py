"""Unit tests for swatch.catalog — typed actions over a mocked client."""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from swatch.catalog import Catalog
from swatch.client import RetryPolicy
from swatch.errors import CatalogError
from swatch.models import IngestRequest, PathTestResult, ScanRootResult


@pytest.fixture
def client():
    c = MagicMock()
    c.agent_key = "key-1"
    c.call.return_value = {"ok": True}
    return c


@pytest.fixture
def catalog(client):
    return Catalog(client, retry=RetryPolicy(max_attempts=2, sleep=lambda s: None))


class TestIngest:
    def test_sends_payload_without_empty_fields(self, catalog, client):
        client.call.return_value = {"ok": True, "action": "created", "asset_id": "as-1"}
        req = IngestRequest(
            relative_path="art/dragon.psd", filename="dragon.psd", file_type="psd",
            file_size=10, modified_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
            quick_hash="ab" * 32, quick_hash_version=1,
        )
        result = catalog.ingest(req)
        assert result.action == "created"
        assert result.asset_id == "as-1"
        assert result.needs_preview is False
        action, = client.call.call_args.args
        payload = client.call.call_args.kwargs
        assert action == "ingest"
        assert payload["modified_at"].startswith("2024-01-02T00:00:00")
        assert "thumbnail_url" not in payload
        assert "file_created_at" not in payload

    def test_retried_once_then_succeeds(self, catalog, client):
        client.call.side_effect = [
            CatalogError("ingest", "down"),
            {"ok": True, "action": "noop", "asset_id": "as-1"},
        ]
        req = IngestRequest(
            relative_path="a.ai", filename="a.ai", file_type="ai", file_size=1,
            modified_at=datetime.now(timezone.utc), quick_hash="0" * 64, quick_hash_version=1,
        )
        assert catalog.ingest(req).action == "noop"
        assert client.call.call_count == 2

    def test_malformed_response_raises_catalog_error(self, catalog, client):
        client.call.return_value = {"ok": True}
        req = IngestRequest(
            relative_path="a.ai", filename="a.ai", file_type="ai", file_size=1,
            modified_at=datetime.now(timezone.utc), quick_hash="0" * 64, quick_hash_version=1,
        )
        with pytest.raises(CatalogError, match="unexpected response"):
            catalog.ingest(req)


class TestIdentity:
    def test_pair_returns_id_and_key(self, catalog, client):
        client.call.return_value = {"ok": True, "agent_id": "a-1", "agent_key": "k-9"}
        assert catalog.pair("CODE", "nas-1") == ("a-1", "k-9")

    def test_pair_without_key_raises(self, catalog, client):
        client.call.return_value = {"ok": True, "agent_id": "a-1"}
        with pytest.raises(CatalogError):
            catalog.pair("CODE", "nas-1")

    def test_register_is_not_retried(self, catalog, client):
        client.call.side_effect = CatalogError("register", "down")
        with pytest.raises(CatalogError):
            catalog.register("nas-1")
        assert client.call.call_count == 1


class TestHeartbeat:
    def test_parses_config_and_commands(self, catalog, client):
        client.call.return_value = {
            "ok": True,
            "config": {"scanning": {"roots": ["/mnt/nas/art"], "batch_size": 50}},
            "commands": {"force_scan": True, "scan_session_id": "s-1", "abort_scan": False},
        }
        resp = catalog.heartbeat("a-1", {"errors": 0}, None)
        assert resp.config.scanning.roots == ["/mnt/nas/art"]
        assert resp.commands.force_scan
        assert resp.commands.scan_session_id == "s-1"
        assert "last_error" not in client.call.call_args.kwargs


class TestRenderQueue:
    def test_claim_with_no_job(self, catalog, client):
        client.call.return_value = {"ok": True, "job": None}
        assert catalog.claim_render("a-1") is None

    def test_claim_returns_job(self, catalog, client):
        client.call.return_value = {"ok": True, "job": {
            "job_id": "j-1", "asset_id": "as-1", "relative_path": "art/logo.ai",
            "file_type": "ai", "filename": "logo.ai",
        }}
        job = catalog.claim_render("a-1")
        assert job.job_id == "j-1"
        assert job.relative_path == "art/logo.ai"

    def test_complete_render_failure_payload(self, catalog, client):
        catalog.complete_render("j-1", False, error="no sibling image")
        assert client.call.call_args.args == ("complete-render",)
        assert client.call.call_args.kwargs == {
            "job_id": "j-1", "success": False, "error": "no sibling image",
        }


class TestCheckpoints:
    def test_get_checkpoint_none(self, catalog, client):
        client.call.return_value = {"ok": True, "checkpoint": None}
        assert catalog.get_checkpoint() is None

    def test_get_checkpoint(self, catalog, client):
        client.call.return_value = {"ok": True, "checkpoint": {
            "session_id": "s-1", "last_completed_dir": "/mnt/nas/art/a",
            "saved_at": "2024-05-01T10:00:00Z",
        }}
        cp = catalog.get_checkpoint()
        assert cp.session_id == "s-1"
        assert cp.session_status is None


class TestReportPathTest:
    def test_serializes_results(self, catalog, client):
        result = PathTestResult(mount_root_valid=True, scan_root_results=[
            ScanRootResult(path="/mnt/nas/art", valid=True, file_count=3),
        ])
        catalog.report_path_test("r-1", result)
        sent = client.call.call_args.kwargs["results"]
        assert sent["mount_root_valid"] is True
        assert sent["scan_root_results"][0]["file_count"] == 3
