"""Unit tests for swatch.agent — identity, heartbeat handling, scan lifecycle."""
import json
import threading
from unittest.mock import MagicMock, PropertyMock, patch

import pytest

from swatch.agent import BridgeAgent, establish_identity
from swatch.cloud_config import CloudConfig
from swatch.config import STATE_FILENAME, AgentSettings
from swatch.errors import CatalogError, ConfigError
from swatch.models import (
    AdaptivePolling, AutoScanFragment, Commands, ConfigFragment, HeartbeatResponse,
    PathTestRequest, ScanningFragment, StorageFragment,
)
from swatch.storage import StorageCredentials, StoragePublisher


@pytest.fixture
def settings(tmp_path):
    return AgentSettings(
        server_url="https://catalog.example.com",
        agent_key="key-1",
        agent_name="nas-bridge",
        data_dir=tmp_path / "state",
        mount_root=str(tmp_path),
        roots=[str(tmp_path)],
    )


def _catalog(agent_key="key-1"):
    catalog = MagicMock()
    catalog.client.agent_key = agent_key
    catalog.heartbeat.return_value = HeartbeatResponse()
    return catalog


def _agent(settings, catalog=None, **kw):
    catalog = catalog or _catalog()
    agent = BridgeAgent(settings, catalog=catalog,
                        config=CloudConfig.from_settings(settings),
                        publisher=MagicMock(), renderer=MagicMock(), **kw)
    agent.agent_id = "ag-1"
    return agent, catalog


class TestEstablishIdentity:
    def test_pairing_saves_key(self, settings):
        settings.agent_key = ""
        settings.pairing_code = "PAIR-42"
        catalog = _catalog(agent_key="")
        catalog.pair.return_value = ("ag-7", "secret-key")

        assert establish_identity(catalog, settings, "bridge") == "ag-7"
        catalog.pair.assert_called_once_with("PAIR-42", "nas-bridge")
        assert catalog.client.agent_key == "secret-key"
        state = json.loads((settings.data_dir / STATE_FILENAME).read_text())
        assert state["agent_id"] == "ag-7"
        assert state["agent_key"] == "secret-key"
        assert state["paired_at"]

    def test_no_key_and_no_code(self, settings):
        settings.agent_key = ""
        with pytest.raises(ConfigError, match="pairing code"):
            establish_identity(_catalog(agent_key=""), settings, "bridge")

    def test_pairing_failure_is_fatal(self, settings):
        settings.agent_key = ""
        settings.pairing_code = "EXPIRED"
        catalog = _catalog(agent_key="")
        catalog.pair.side_effect = CatalogError("pair", "HTTP 400: invalid code")
        with pytest.raises(ConfigError, match="pairing failed"):
            establish_identity(catalog, settings, "bridge")

    def test_saved_agent_id_reused(self, settings):
        settings.data_dir.mkdir()
        (settings.data_dir / STATE_FILENAME).write_text(json.dumps({"agent_id": "ag-3"}))
        catalog = _catalog()
        assert establish_identity(catalog, settings, "bridge") == "ag-3"
        catalog.register.assert_not_called()

    def test_registers_when_no_saved_id(self, settings):
        catalog = _catalog()
        catalog.register.return_value = "ag-9"
        assert establish_identity(catalog, settings, "bridge") == "ag-9"
        catalog.register.assert_called_once_with("nas-bridge", agent_type="bridge")
        state = json.loads((settings.data_dir / STATE_FILENAME).read_text())
        assert state == {"agent_id": "ag-9"}


class TestHeartbeat:
    def test_sends_counters_and_diagnostics(self, settings):
        agent, catalog = _agent(settings)
        agent.counters.incr("files_checked", 3)
        agent.heartbeat_once()
        args, kwargs = catalog.heartbeat.call_args
        assert args[0] == "ag-1"
        assert args[1]["files_checked"] == 3
        assert kwargs["diagnostics"]["mount_root_exists"] is True
        assert kwargs["diagnostics"]["scan_active"] is False

    def test_failure_recorded_not_raised(self, settings):
        agent, catalog = _agent(settings)
        catalog.heartbeat.side_effect = CatalogError("heartbeat", "HTTP 503: down")
        assert agent.heartbeat_once() is None
        assert "HTTP 503" in agent.last_error

    def test_config_applied(self, settings, tmp_path):
        agent, catalog = _agent(settings)
        cloud_root = str(tmp_path / "cloud")
        catalog.heartbeat.return_value = HeartbeatResponse(config=ConfigFragment(
            do_spaces=StorageFragment(bucket="previews", region="nyc3"),
            scanning=ScanningFragment(roots=[cloud_root], batch_size=25),
        ))
        agent.heartbeat_once()
        agent.publisher.reinitialize.assert_called_once_with(bucket="previews", region="nyc3")
        assert agent.config.roots == [cloud_root]
        assert agent.config.batch_size == 25

    def test_path_test_command(self, settings, tmp_path):
        agent, catalog = _agent(settings)
        agent.handle_commands(Commands(test_paths=PathTestRequest(
            request_id="req-1", container_mount_root=str(tmp_path),
            scan_roots=[str(tmp_path)],
        )))
        request_id, result = catalog.report_path_test.call_args.args
        assert request_id == "req-1"
        assert result.mount_root_valid
        assert result.scan_root_results[0].valid

    def test_force_scan_command(self, settings):
        agent, _ = _agent(settings)
        with patch.object(agent, "start_scan") as start:
            agent.handle_commands(Commands(force_scan=True, scan_session_id="s-5"))
        start.assert_called_once_with("s-5")

    def test_abort_only_when_scanning(self, settings):
        agent, _ = _agent(settings)
        agent.handle_commands(Commands(abort_scan=True))
        assert not agent._abort.is_set()
        with patch.object(BridgeAgent, "scanning", new_callable=PropertyMock,
                          return_value=True):
            agent.handle_commands(Commands(abort_scan=True, force_scan=True))
        assert agent._abort.is_set()

    def test_bad_storage_config_does_not_block_commands(self, settings):
        def factory(credentials):
            if credentials.endpoint:
                raise ValueError(f"Invalid endpoint: {credentials.endpoint}")
            return MagicMock()

        publisher = StoragePublisher(StorageCredentials(key="k", secret="s", bucket="previews"),
                                     client_factory=factory)
        catalog = _catalog()
        agent = BridgeAgent(settings, catalog=catalog,
                            config=CloudConfig.from_settings(settings),
                            publisher=publisher, renderer=MagicMock())
        agent.agent_id = "ag-1"
        catalog.heartbeat.return_value = HeartbeatResponse(
            config=ConfigFragment(do_spaces=StorageFragment(endpoint="nyc3.digitaloceanspaces.com")),
            commands=Commands(abort_scan=True),
        )
        with patch.object(BridgeAgent, "scanning", new_callable=PropertyMock,
                          return_value=True):
            agent.heartbeat_once()
            agent.heartbeat_once()
        assert agent._abort.is_set()
        assert "Invalid endpoint" in agent.last_error
        assert publisher.credentials.endpoint == ""
        assert publisher.credentials.bucket == "previews"


class TestCadence:
    def test_idle_interval(self, settings):
        agent, _ = _agent(settings)
        assert agent.next_interval() == 30

    def test_active_interval(self, settings):
        agent, _ = _agent(settings)
        with patch.object(BridgeAgent, "scanning", new_callable=PropertyMock,
                          return_value=True):
            assert agent.next_interval() == 5

    def test_heartbeat_interval_is_default_until_pushed(self, settings):
        agent, _ = _agent(settings, heartbeat_interval=10)
        assert agent.next_interval() == 10

    def test_pushed_idle_interval_not_capped(self, settings):
        agent, _ = _agent(settings)
        agent.config.apply(ConfigFragment(scanning=ScanningFragment(
            adaptive_polling=AdaptivePolling(idle_seconds=120, active_seconds=5),
        )))
        assert agent.next_interval() == 120
        with patch.object(BridgeAgent, "scanning", new_callable=PropertyMock,
                          return_value=True):
            assert agent.next_interval() == 5


class TestAutoScan:
    def _enabled(self, settings, now):
        agent, _ = _agent(settings, clock=lambda: now[0])
        agent.config.apply(ConfigFragment(auto_scan=AutoScanFragment(enabled=True,
                                                                     interval_hours=1)))
        return agent

    def test_disabled(self, settings):
        agent, _ = _agent(settings)
        assert agent.maybe_auto_scan() is False

    def test_waits_one_interval(self, settings):
        now = [1000.0]
        agent = self._enabled(settings, now)
        with patch.object(agent, "start_scan", return_value=True) as start:
            now[0] += 1800
            assert agent.maybe_auto_scan() is False
            now[0] += 1800
            assert agent.maybe_auto_scan() is True
        start.assert_called_once_with()


class TestSessions:
    def test_run_session_records_outcome(self, settings):
        agent, _ = _agent(settings)
        agent.runner = MagicMock(last_error="ingest failed")
        session = agent.run_session("s-1")
        agent.runner.run.assert_called_once_with("s-1", agent._abort)
        assert agent.last_session is session
        assert agent.last_error == "ingest failed"

    def test_only_one_session_at_a_time(self, settings):
        agent, _ = _agent(settings)
        release = threading.Event()
        agent.runner = MagicMock(last_error=None)
        agent.runner.run.side_effect = lambda sid, abort: release.wait(5)

        assert agent.start_scan("s-1") is True
        assert agent.scanning
        assert agent.start_scan("s-2") is False
        release.set()
        agent._session_thread.join(5)
        assert not agent.scanning
        agent.runner.run.assert_called_once()

    def test_wait_for_scan_returns_finished_session(self, settings):
        agent, _ = _agent(settings)
        agent.runner = MagicMock(last_error=None)
        agent.start_scan("s-1")
        session = agent.wait_for_scan(poll=0.05)
        assert session is agent.runner.run.return_value
        assert not agent.scanning

    def test_wait_for_scan_without_session(self, settings):
        agent, _ = _agent(settings)
        assert agent.wait_for_scan() is None

    def test_abort_scan_stops_running_session(self, settings):
        agent, _ = _agent(settings)
        agent.runner = MagicMock(last_error=None)
        agent.runner.run.side_effect = lambda sid, abort: abort.wait(5)
        agent.start_scan("s-1")
        agent.abort_scan()
        agent.wait_for_scan(poll=0.05)
        assert not agent.scanning

    def test_shutdown_aborts_running_scan(self, settings):
        agent, _ = _agent(settings)
        agent.runner = MagicMock(last_error=None)
        agent.runner.run.side_effect = lambda sid, abort: abort.wait(5)
        agent.start_scan("s-1")
        agent.shutdown()
        assert agent._abort.is_set()
        assert not agent.scanning
