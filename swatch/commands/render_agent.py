"""swatch render-agent — remote render queue consumer."""
from __future__ import annotations

from swatch.agent import establish_identity
from swatch.catalog import Catalog
from swatch.client import CatalogClient, enable_request_log
from swatch.commands import configure_logging, print_server_info
from swatch.config import load_settings
from swatch.illustrator import CircuitBreaker, find_cscript
from swatch.normalize import get_source_os
from swatch.render_agent import RemoteRenderer, RenderAgent
from swatch.storage import StorageCredentials, StoragePublisher


def cmd_render_agent(args) -> None:
    debug = getattr(args, "debug", False)
    configure_logging(debug)
    if debug:
        enable_request_log()
    settings = load_settings()
    print_server_info()

    catalog = Catalog(CatalogClient(settings.server_url, settings.agent_key))
    agent_id = establish_identity(catalog, settings, "windows-render")

    cscript = None
    if settings.illustrator != "off" and get_source_os() == "windows":
        cscript = settings.illustrator or find_cscript()
    renderer = RemoteRenderer(
        cscript=cscript,
        breaker=CircuitBreaker(),
        gs_path=settings.gs_path or None,
        magick_path=settings.magick_path or None,
    )
    agent = RenderAgent(
        catalog,
        StoragePublisher(StorageCredentials.from_mapping(settings.storage)),
        renderer,
        nas_host=settings.nas_host,
        nas_share=settings.nas_share,
        poll_interval=args.poll_interval or settings.render_poll_interval,
        mount_root=settings.mount_root,
        agent_id=agent_id,
    )
    agent.run()
