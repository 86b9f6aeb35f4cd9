"""swatch run — long-running bridge agent."""
from __future__ import annotations

from swatch.agent import BridgeAgent
from swatch.client import enable_request_log
from swatch.commands import configure_logging, print_server_info
from swatch.config import load_settings


def cmd_run(args) -> None:
    debug = getattr(args, "debug", False)
    configure_logging(debug)
    if debug:
        enable_request_log()
    settings = load_settings()
    print_server_info()
    BridgeAgent(settings).run()
