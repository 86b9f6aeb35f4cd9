"""Catalog RPC transport: shared HTTP session, request log, retry."""
from __future__ import annotations

import logging
import threading
import time
import traceback
from typing import Any, Callable, Optional, TypeVar

import requests
from requests.adapters import HTTPAdapter

from swatch.errors import CatalogError

logger = logging.getLogger("swatch.client")

T = TypeVar("T")

AGENT_API_PATH = "/functions/v1/agent-api"


# ---------------------------------------------------------------------------
# Request instrumentation (enabled via enable_request_log())
# ---------------------------------------------------------------------------
_request_log_enabled = False
_request_log_lock = threading.Lock()
_request_log: list[dict] = []


def enable_request_log() -> None:
    global _request_log_enabled
    _request_log_enabled = True


def _log_request(action: str) -> None:
    if not _request_log_enabled:
        return
    # Capture a short caller summary (skip client.py / catalog.py frames)
    frames = traceback.extract_stack()
    callers = [
        f"{f.filename.rsplit('/', 1)[-1]}:{f.lineno}:{f.name}"
        for f in frames[:-1]
        if "client.py" not in f.filename and "catalog.py" not in f.filename
    ][-3:]
    entry = {
        "t": time.time(),
        "action": action,
        "callers": " < ".join(reversed(callers)),
        "thread": threading.current_thread().name,
    }
    with _request_log_lock:
        _request_log.append(entry)


def dump_request_log() -> list[dict]:
    """Return and clear the request log."""
    with _request_log_lock:
        log = _request_log[:]
        _request_log.clear()
    return log


def _make_session() -> requests.Session:
    # No urllib3-level retries; RetryPolicy owns retry/backoff at the call site.
    session = requests.Session()
    adapter = HTTPAdapter()
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


# Module-level singleton — reuses TCP connections across all requests in a process
_session: requests.Session | None = None
_session_lock = threading.Lock()


def _get_session() -> requests.Session:
    global _session
    with _session_lock:
        if _session is None:
            _session = _make_session()
        return _session


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

class RetryPolicy:
    """Bounded attempts with an exponential delay schedule.

    Only CatalogError is retried; anything else is a programming error and
    propagates on the first attempt.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def delays(self) -> list[float]:
        """Waits between attempts: base, 2*base, 4*base… capped at max_delay."""
        return [
            min(self.base_delay * (2 ** i), self.max_delay)
            for i in range(self.max_attempts - 1)
        ]

    def run(self, fn: Callable[[], T], label: str) -> T:
        delays = self.delays()
        for attempt in range(self.max_attempts):
            try:
                return fn()
            except CatalogError as e:
                if attempt >= len(delays):
                    raise
                if attempt == 0:
                    logger.warning("%s failed (%s), retrying up to %d more times",
                                   label, e, len(delays))
                self._sleep(delays[attempt])
        raise AssertionError("unreachable")


NO_RETRY = RetryPolicy(max_attempts=1)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class CatalogClient:
    """POST {server_url}/functions/v1/agent-api with {"action": ..., ...}."""

    def __init__(
        self,
        server_url: str,
        agent_key: str = "",
        timeout: tuple = (5, 30),
        session: Optional[requests.Session] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.agent_key = agent_key
        self.timeout = timeout
        self._session = session

    @property
    def url(self) -> str:
        return f"{self.server_url}{AGENT_API_PATH}"

    def call(self, action: str, **payload: Any) -> dict[str, Any]:
        _log_request(action)
        session = self._session or _get_session()
        headers = {"Content-Type": "application/json"}
        if self.agent_key:
            headers["x-agent-key"] = self.agent_key
        body = {"action": action, **payload}
        try:
            resp = session.post(self.url, json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise CatalogError(action, str(e)) from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if not resp.ok:
            detail = data.get("error") if isinstance(data, dict) else None
            raise CatalogError(action, f"HTTP {resp.status_code}: {detail or resp.reason}")
        if not isinstance(data, dict):
            raise CatalogError(action, "response is not a JSON object")
        if not data.get("ok"):
            raise CatalogError(action, data.get("error") or "request failed")
        return data
