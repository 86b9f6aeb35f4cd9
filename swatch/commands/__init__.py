import logging
import sys

from swatch.config import get_server_url
from swatch.normalize import local_hostname

LOG_FORMAT = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
    # boto/urllib3 are chatty at DEBUG
    for name in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(name).setLevel(logging.WARNING)


def print_server_info() -> None:
    """Print version, catalog URL, and hostname to stderr (TTY only)."""
    if sys.stderr.isatty():
        print(f"swatch {get_version()}", file=sys.stderr)
        print(f"  {local_hostname()} → {get_server_url() or '(no server configured)'}",
              file=sys.stderr)


def get_version() -> str:
    try:
        from importlib.metadata import PackageNotFoundError, version
        return version("swatch")
    except PackageNotFoundError:
        return "unknown"
