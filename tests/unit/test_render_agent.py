"""Unit tests for swatch.render_agent — remote fallback chain and job handling."""
import os
import subprocess
import threading
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from swatch.errors import CatalogError, PreviewError, StorageError
from swatch.illustrator import CircuitBreaker
from swatch.models import (
    ConfigFragment, HeartbeatResponse, RenderAgentFragment, RenderJob, StorageFragment,
)
from swatch.render_agent import (
    RENDER_FAILED, RemoteRenderer, RenderAgent, find_sibling_image, render_with_magick,
)
from swatch.thumbnails import Preview


@pytest.fixture(autouse=True)
def no_external_tools():
    with patch("swatch.thumbnails.shutil.which", return_value=None), \
            patch("swatch.render_agent.shutil.which", return_value=None):
        yield


class TestSiblingImage:
    def test_case_insensitive_match(self, tmp_path):
        (tmp_path / "Logo.ai").write_bytes(b"x")
        (tmp_path / "LOGO.PNG").write_bytes(b"x")
        assert find_sibling_image(str(tmp_path / "Logo.ai")) == str(tmp_path / "LOGO.PNG")

    def test_jpg_preferred(self, tmp_path):
        (tmp_path / "logo.png").write_bytes(b"x")
        (tmp_path / "logo.jpg").write_bytes(b"x")
        assert find_sibling_image(str(tmp_path / "logo.ai")).endswith("logo.jpg")

    def test_none(self, tmp_path):
        assert find_sibling_image(str(tmp_path / "logo.ai")) is None


class TestRemoteRenderer:
    def test_chain_order(self):
        renderer = RemoteRenderer(cscript="cscript.exe", gs_path="gs", magick_path="magick")
        assert [n for n, _ in renderer.strategies("ai")] == \
            ["illustrator", "ghostscript", "magick", "sibling"]
        assert [n for n, _ in renderer.strategies("psd")] == \
            ["ghostscript", "magick", "sibling"]

    def test_falls_back_to_sibling(self, tmp_path):
        Image.new("RGB", (1600, 800), (0, 0, 255)).save(tmp_path / "logo.png")
        (tmp_path / "logo.ai").write_bytes(b"%!PS")
        preview = RemoteRenderer().render(str(tmp_path / "logo.ai"))
        assert (preview.width, preview.height) == (800, 400)

    def test_exhaustion(self, tmp_path):
        with pytest.raises(PreviewError) as exc_info:
            RemoteRenderer().render(str(tmp_path / "logo.ai"))
        assert exc_info.value.reason == RENDER_FAILED
        assert exc_info.value.attempts == [("sibling", "no sibling image")]

    def test_breaker_records_illustrator_outcome(self, tmp_path):
        breaker = CircuitBreaker(failure_limit=1)
        renderer = RemoteRenderer(cscript="cscript.exe", breaker=breaker)
        with patch("swatch.render_agent.render_with_illustrator",
                   side_effect=RuntimeError("COM failed")):
            with pytest.raises(PreviewError):
                renderer.render(str(tmp_path / "logo.ai"))
        assert not breaker.available()

        with patch("swatch.render_agent.render_with_illustrator") as illustrator:
            with pytest.raises(PreviewError) as exc_info:
                renderer.render(str(tmp_path / "logo.ai"))
        illustrator.assert_not_called()
        assert exc_info.value.attempts[0] == ("illustrator", "circuit breaker open")


class TestMagick:
    def _run(self, tmp_path, effect):
        seen = {}

        def fake_run(cmd, **kw):
            seen["out"] = cmd[-1]
            return effect(cmd, cmd[-1])

        with patch("swatch.render_agent.subprocess.run", side_effect=fake_run):
            try:
                result = render_with_magick(str(tmp_path / "logo.ai"), "magick", timeout=5)
            except RuntimeError as e:
                result = e
        return result, seen

    def test_success(self, tmp_path):
        image, seen = self._run(
            tmp_path, lambda cmd, out: Image.new("RGB", (30, 30), "blue").save(out))
        assert image.size == (30, 30)
        assert not os.path.exists(os.path.dirname(seen["out"]))

    def test_timeout_cleans_up(self, tmp_path):
        def hang(cmd, out):
            open(out, "wb").close()
            raise subprocess.TimeoutExpired(cmd, 5)

        error, seen = self._run(tmp_path, hang)
        assert isinstance(error, RuntimeError)
        assert "timed out" in str(error)
        assert os.path.basename(os.path.dirname(seen["out"])).startswith("swatch-magick-")
        assert not os.path.exists(os.path.dirname(seen["out"]))

    def test_nonzero_exit_cleans_up(self, tmp_path):
        def fail(cmd, out):
            raise subprocess.CalledProcessError(1, cmd, stderr=b"no decode delegate")

        error, seen = self._run(tmp_path, fail)
        assert isinstance(error, RuntimeError)
        assert str(error) == "magick exited 1"
        assert not os.path.exists(os.path.dirname(seen["out"]))

    def test_no_output(self, tmp_path):
        error, seen = self._run(tmp_path, lambda cmd, out: None)
        assert isinstance(error, RuntimeError)
        assert "no output" in str(error)

JOB = RenderJob(job_id="job-1", asset_id="a1", relative_path="art/logo.ai",
                filename="logo.ai")


def _agent(job=JOB):
    catalog = MagicMock()
    catalog.claim_render.return_value = job
    renderer = MagicMock()
    renderer.render.return_value = Preview(data=b"jpeg", width=10, height=10)
    publisher = MagicMock()
    publisher.upload.return_value = "https://cdn/thumbnails/a1.jpg"
    agent = RenderAgent(catalog, publisher, renderer, mount_root="/mnt/nas",
                        agent_id="ag-w")
    return agent, catalog, renderer, publisher


@pytest.fixture(autouse=True)
def linux_host():
    with patch("swatch.normalize.get_source_os", return_value="linux"):
        yield


class TestRenderAgent:
    def test_success(self):
        agent, catalog, renderer, publisher = _agent()
        assert agent.poll_once() is True
        renderer.render.assert_called_once_with("/mnt/nas/art/logo.ai", "ai")
        publisher.upload.assert_called_once_with("a1", b"jpeg")
        catalog.complete_render.assert_called_once_with(
            "job-1", True, thumbnail_url="https://cdn/thumbnails/a1.jpg")
        assert agent.jobs_completed == 1

    def test_empty_queue(self):
        agent, catalog, renderer, _ = _agent(job=None)
        assert agent.poll_once() is False
        renderer.render.assert_not_called()

    def test_render_failure_reported_once(self):
        agent, catalog, renderer, _ = _agent()
        renderer.render.side_effect = PreviewError(RENDER_FAILED, [("sibling", "none")])
        assert agent.poll_once() is True
        catalog.complete_render.assert_called_once()
        args, kwargs = catalog.complete_render.call_args
        assert args == ("job-1", False)
        assert kwargs["error"].startswith(RENDER_FAILED)
        assert agent.jobs_failed == 1
        renderer.render.assert_called_once()

    def test_upload_failure_reported(self):
        agent, catalog, _, publisher = _agent()
        publisher.upload.side_effect = StorageError("no storage bucket configured")
        agent.poll_once()
        catalog.complete_render.assert_called_once_with(
            "job-1", False, error="no storage bucket configured")

    def test_missing_relative_path(self):
        agent, catalog, renderer, _ = _agent(job=RenderJob(job_id="job-2", asset_id="a2"))
        assert agent.poll_once() is True
        renderer.render.assert_not_called()
        catalog.complete_render.assert_called_once_with(
            "job-2", False, error="asset missing relative_path")

    def test_unc_path_on_windows(self):
        agent, _, renderer, _ = _agent()
        agent.nas_host, agent.nas_share = "nas01", "design"
        with patch("swatch.normalize.get_source_os", return_value="windows"):
            agent.poll_once()
        renderer.render.assert_called_once_with(r"\\nas01\design\art\logo.ai", "ai")

    def test_claim_failure(self):
        agent, catalog, _, _ = _agent()
        catalog.claim_render.side_effect = CatalogError("claim-render", "HTTP 502")
        assert agent.poll_once() is False
        assert "HTTP 502" in agent.last_error

    def test_busy_tick_skipped(self):
        agent, catalog, renderer, _ = _agent()
        started, release = threading.Event(), threading.Event()

        def slow_render(path, file_type):
            started.set()
            release.wait(5)
            return Preview(data=b"jpeg", width=1, height=1)

        renderer.render.side_effect = slow_render
        worker = threading.Thread(target=agent.poll_once)
        worker.start()
        assert started.wait(5)
        assert agent.poll_once() is False
        release.set()
        worker.join(5)
        assert catalog.claim_render.call_count == 1

    def test_config_updates_mapping_and_storage(self):
        agent, _, _, publisher = _agent()
        agent.apply_config(ConfigFragment(
            windows_agent=RenderAgentFragment(nas_host="nas02", nas_share="art"),
        ))
        assert (agent.nas_host, agent.nas_share) == ("nas02", "art")
        publisher.reinitialize.assert_not_called()

    def test_bad_storage_config_keeps_running(self):
        agent, catalog, _, publisher = _agent()
        publisher.reinitialize.side_effect = ValueError("Invalid endpoint: nyc3.digitaloceanspaces.com")
        catalog.heartbeat.return_value = HeartbeatResponse(config=ConfigFragment(
            windows_agent=RenderAgentFragment(nas_host="nas03"),
            do_spaces=StorageFragment(endpoint="nyc3.digitaloceanspaces.com"),
        ))
        agent.heartbeat_once()
        assert agent.nas_host == "nas03"
        assert "Invalid endpoint" in agent.last_error
        assert agent.poll_once() is True
        catalog.complete_render.assert_called_once()

    def test_heartbeat_reports_breaker(self):
        agent, catalog, _, _ = _agent()
        agent.renderer = RemoteRenderer(cscript="cscript.exe")
        catalog.heartbeat.return_value = MagicMock(config=None)
        agent.heartbeat_once()
        kwargs = catalog.heartbeat.call_args.kwargs
        assert kwargs["health"]["illustrator_circuit_breaker"] == "closed"
