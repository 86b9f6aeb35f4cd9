"""swatch config — interactively configure the agent."""
from __future__ import annotations
import os
from pathlib import Path
from urllib.parse import urlparse

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore[no-redef]

from swatch.config import config_path
from swatch.normalize import is_under_boundary

DEFAULT_MOUNT_ROOT = "/mnt/nas"


def _validate_url(url: str) -> str | None:
    """Return None if valid, or an error message if not."""
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https"):
        return "Server URL must start with http:// or https://."
    if not parsed.hostname:
        return "Server URL has no host."
    return None


def _validate_roots(mount_root: str, roots: list[str]) -> str | None:
    if not os.path.isabs(mount_root):
        return "Mount root must be an absolute path."
    for root in roots:
        if not is_under_boundary(root, mount_root):
            return f"Scan root {root} is not under the mount root {mount_root}."
    return None


def _prompt(label: str, current: str, default: str) -> str | None:
    """Prompt for a value, showing current or default in brackets. Returns None on cancel."""
    shown = current or default
    try:
        raw = input(f"{label} [{shown}]: ").strip()
    except (EOFError, KeyboardInterrupt):
        print()
        return None
    return raw or shown


def _read_config(path: Path) -> dict:
    if path.exists():
        with open(path, "rb") as f:
            return tomllib.load(f)
    return {}


def _toml_value(val) -> str:
    if isinstance(val, bool):
        return "true" if val else "false"
    if isinstance(val, str):
        escaped = val.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    if isinstance(val, list):
        return "[" + ", ".join(_toml_value(v) for v in val) + "]"
    return str(val)


def _write_config(path: Path, cfg: dict) -> None:
    """Write config dict as TOML, preserving section order."""
    lines = []
    for section, values in cfg.items():
        if not isinstance(values, dict):
            continue
        lines.append(f"[{section}]")
        for key, val in values.items():
            lines.append(f"{key} = {_toml_value(val)}")
        lines.append("")
    path.write_text("\n".join(lines).rstrip("\n") + "\n")


def cmd_config(args) -> None:
    path = config_path()
    cfg = _read_config(path)

    # --- Server URL ---
    url = _prompt("Catalog server URL", cfg.get("server", {}).get("url", ""), "https://")
    if url is None:
        return
    error = _validate_url(url)
    if error:
        print(f"Error: {error}")
        return
    cfg.setdefault("server", {})["url"] = url.rstrip("/")

    # --- Mount root ---
    agent = cfg.setdefault("agent", {})
    mount_root = _prompt("NAS mount root", agent.get("mount_root", ""), DEFAULT_MOUNT_ROOT)
    if mount_root is None:
        return

    # --- Scan roots ---
    current_roots = ", ".join(agent.get("roots", []))
    raw_roots = _prompt("Scan roots (comma-separated)", current_roots, mount_root)
    if raw_roots is None:
        return
    roots = [r.strip() for r in raw_roots.split(",") if r.strip()]

    error = _validate_roots(mount_root, roots)
    if error:
        print(f"Error: {error}")
        return
    agent["mount_root"] = mount_root
    agent["roots"] = roots

    _write_config(path, cfg)

    print()
    print(f"Saved: {path}")
    print(f"     server = {cfg['server']['url']}")
    print(f" mount root = {mount_root}")
    print(f"      roots = {', '.join(roots)}")
