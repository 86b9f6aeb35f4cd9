"""Bridge agent: identity, heartbeat control channel, scan lifecycle."""
from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from swatch.catalog import Catalog
from swatch.client import CatalogClient
from swatch.cloud_config import CloudConfig, ResourceGuard
from swatch.config import AgentSettings, load_agent_state, save_agent_state
from swatch.counters import Counters
from swatch.errors import CatalogError, ConfigError
from swatch.models import Commands, ConfigFragment, HeartbeatResponse
from swatch.scanner import check_paths
from swatch.session import ScanRunner, ScanSession
from swatch.storage import StorageCredentials, StoragePublisher
from swatch.thumbnails import PreviewRenderer

logger = logging.getLogger("swatch.agent")

HEARTBEAT_INTERVAL = 30  # seconds
SHUTDOWN_TIMEOUT = 30


def establish_identity(catalog: Catalog, settings: AgentSettings, agent_type: str) -> str:
    """Pair or register; returns the agent id. Raises ConfigError on failure.

    Order: pairing code (when no key yet) → saved agent id → register.
    """
    client = catalog.client
    state = load_agent_state(settings.data_dir)
    if not client.agent_key:
        if not settings.pairing_code:
            raise ConfigError(
                "no agent key and no pairing code; set SWATCH_PAIRING_CODE "
                "(generate one from the catalog's agent settings)"
            )
        logger.info("no agent key found, pairing with pairing code")
        try:
            agent_id, agent_key = catalog.pair(settings.pairing_code, settings.agent_name)
        except CatalogError as e:
            raise ConfigError(f"pairing failed: {e}") from e
        path = save_agent_state(
            settings.data_dir,
            agent_id=agent_id,
            agent_key=agent_key,
            paired_at=datetime.now(timezone.utc).isoformat(),
        )
        client.agent_key = agent_key
        logger.info("paired as %s, key saved to %s", agent_id, path)
        return agent_id

    if state.get("agent_id"):
        logger.info("using saved agent id %s", state["agent_id"])
        return state["agent_id"]

    try:
        agent_id = catalog.register(settings.agent_name, agent_type=agent_type)
    except CatalogError as e:
        raise ConfigError(f"registration failed: {e}") from e
    save_agent_state(settings.data_dir, agent_id=agent_id)
    logger.info("registered as %s", agent_id)
    return agent_id


class BridgeAgent:
    def __init__(
        self,
        settings: AgentSettings,
        catalog: Optional[Catalog] = None,
        config: Optional[CloudConfig] = None,
        publisher: Optional[StoragePublisher] = None,
        renderer: Optional[PreviewRenderer] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.catalog = catalog or Catalog(CatalogClient(settings.server_url, settings.agent_key))
        self.config = config or CloudConfig.from_settings(settings)
        self.counters = Counters()
        self.publisher = publisher or StoragePublisher(
            StorageCredentials.from_mapping(settings.storage)
        )
        self.renderer = renderer or PreviewRenderer(gs_path=settings.gs_path or None)
        self.runner = ScanRunner(
            self.catalog, self.config, self.counters, self.renderer, self.publisher,
            guard=ResourceGuard(self.config),
        )
        self.heartbeat_interval = heartbeat_interval
        self._clock = clock

        self.agent_id: Optional[str] = None
        self.last_error: Optional[str] = None
        self.last_session: Optional[ScanSession] = None

        self._session_lock = threading.Lock()
        self._session_thread: Optional[threading.Thread] = None
        self._abort = threading.Event()
        self._stop = threading.Event()
        # auto-scan waits one full interval after startup
        self._last_scan_finished = clock()

    # -- lifecycle --------------------------------------------------------

    def startup(self) -> None:
        self.agent_id = establish_identity(self.catalog, self.settings, "bridge")
        if not self.publisher.credentials.key:
            logger.warning("no storage credentials yet; waiting for cloud config via heartbeat")

    def run(self) -> None:
        """Start up, then heartbeat until stop() or Ctrl-C."""
        self.startup()
        heartbeat = threading.Thread(
            target=self._heartbeat_loop, name="swatch-heartbeat", daemon=True
        )
        heartbeat.start()
        logger.info("bridge agent %s running (heartbeat every %ss)",
                    self.agent_id, self.heartbeat_interval)
        try:
            while not self._stop.wait(1.0):
                pass
        finally:
            self.shutdown()

    def stop(self) -> None:
        self._stop.set()

    def shutdown(self) -> None:
        self._stop.set()
        self._abort.set()
        thread = self._session_thread
        if thread is not None and thread.is_alive():
            logger.info("waiting for in-flight work to finish")
            thread.join(SHUTDOWN_TIMEOUT)

    # -- heartbeat --------------------------------------------------------

    @property
    def scanning(self) -> bool:
        thread = self._session_thread
        return thread is not None and thread.is_alive()

    def next_interval(self) -> float:
        return self.config.poll_interval(self.scanning, idle_default=self.heartbeat_interval)

    def _heartbeat_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.heartbeat_once()
            except Exception as e:
                logger.exception("heartbeat tick failed")
                self.last_error = str(e)
            self._stop.wait(self.next_interval())

    def _diagnostics(self) -> dict:
        mount_root = self.config.mount_root
        roots = self.config.roots
        return {
            "mount_root_path": mount_root,
            "mount_root_exists": os.path.isdir(mount_root),
            "scan_roots": roots,
            "unreadable_roots": [r for r in roots if not os.access(r, os.R_OK)],
            "scan_active": self.scanning,
        }

    def heartbeat_once(self) -> Optional[HeartbeatResponse]:
        try:
            response = self.catalog.heartbeat(
                self.agent_id,
                self.counters.snapshot(),
                self.last_error,
                diagnostics=self._diagnostics(),
            )
        except CatalogError as e:
            logger.error("heartbeat failed: %s", e)
            self.last_error = str(e)
            return None

        if response.config is not None:
            self.apply_config(response.config)
        if response.commands is not None:
            self.handle_commands(response.commands)
        self.maybe_auto_scan()
        return response

    def apply_config(self, fragment: ConfigFragment) -> None:
        self.config.apply(fragment)
        if fragment.do_spaces is None:
            return
        try:
            self.publisher.reinitialize(**fragment.do_spaces.model_dump(exclude_none=True))
        except Exception as e:
            logger.error("storage config rejected, keeping current client: %s", e)
            self.last_error = str(e)

    def handle_commands(self, commands: Commands) -> None:
        if commands.abort_scan and self.scanning:
            logger.info("abort requested via heartbeat")
            self.abort_scan()
        if commands.force_scan and not self.scanning:
            logger.info("scan requested via heartbeat (session %s)",
                        commands.scan_session_id or "new")
            self.start_scan(commands.scan_session_id)
        if commands.test_paths is not None:
            request = commands.test_paths
            logger.info("path test %s requested", request.request_id)
            result = check_paths(request)
            try:
                self.catalog.report_path_test(request.request_id, result)
            except CatalogError as e:
                logger.error("path test report failed: %s", e)
                self.last_error = str(e)

    def maybe_auto_scan(self) -> bool:
        if not self.config.auto_scan_enabled or self.scanning:
            return False
        elapsed = self._clock() - self._last_scan_finished
        if elapsed < self.config.auto_scan_interval:
            return False
        logger.info("auto-scan triggered (%.1fh since last scan)", elapsed / 3600)
        return self.start_scan()

    # -- sessions ---------------------------------------------------------

    def start_scan(self, session_id: Optional[str] = None) -> bool:
        """Start a session on its own thread; False if one is already running."""
        with self._session_lock:
            if self.scanning:
                logger.warning("scan already in progress, skipping")
                return False
            self._abort.clear()
            sid = session_id or str(uuid.uuid4())
            self._session_thread = threading.Thread(
                target=self.run_session, args=(sid,), name="swatch-scan", daemon=True
            )
            self._session_thread.start()
            return True

    def abort_scan(self) -> None:
        self._abort.set()

    def wait_for_scan(self, poll: float = 0.5) -> Optional[ScanSession]:
        """Block until the running session ends; returns the last finished session.

        Joins in short slices so Ctrl-C reaches the calling thread.
        """
        thread = self._session_thread
        while thread is not None and thread.is_alive():
            thread.join(poll)
        return self.last_session

    def run_session(self, session_id: str) -> ScanSession:
        try:
            session = self.runner.run(session_id, self._abort)
            self.last_session = session
            return session
        finally:
            self._last_scan_finished = self._clock()
            if self.runner.last_error:
                self.last_error = self.runner.last_error
