"""swatch scan — run one scan session in the foreground."""
from __future__ import annotations

import logging
import sys
import uuid
from collections import Counter

from swatch.agent import BridgeAgent
from swatch.client import dump_request_log, enable_request_log
from swatch.commands import configure_logging, print_server_info
from swatch.config import load_settings

logger = logging.getLogger("swatch.commands.scan")


def _dump_api_log() -> None:
    """Summarize RPCs made during the scan (only populated with --debug)."""
    entries = dump_request_log()
    counts: Counter = Counter((e["action"], e["thread"]) for e in entries)
    for (action, thread), n in counts.most_common():
        print(f"  [api-log] {action} ×{n}  thread={thread}", file=sys.stderr)


def cmd_scan(args) -> None:
    debug = getattr(args, "debug", False)
    configure_logging(debug)
    if debug:
        enable_request_log()
    settings = load_settings()
    if args.roots:
        settings.roots = list(args.roots)
    print_server_info()

    agent = BridgeAgent(settings)
    agent.startup()
    agent.start_scan(args.session_id or str(uuid.uuid4()))
    try:
        try:
            session = agent.wait_for_scan()
        except KeyboardInterrupt:
            print("interrupted, stopping scan at the next file...", file=sys.stderr)
            agent.abort_scan()
            session = agent.wait_for_scan()
    finally:
        if debug:
            _dump_api_log()

    if session is None:
        print("scan did not finish; see the log for details", file=sys.stderr)
        sys.exit(1)

    counters = session.counters.snapshot()
    print(f"scan {session.session_id}: {session.status}")
    for name, value in counters.items():
        if value:
            print(f"  {name:<26} {value}")
    if session.error:
        print(f"  error: {session.error}", file=sys.stderr)
    sys.exit(0 if session.status == "completed" else 1)
