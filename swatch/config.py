"""Load ~/.swatch.config (TOML) with env-var overrides."""
from __future__ import annotations
import json
import os
try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore[no-redef]  # Python < 3.11 backport
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from swatch.errors import ConfigError
from swatch.normalize import is_under_boundary

_DEFAULT: dict[str, Any] = {
    "server": {
        "url": "",
        "agent_key": "",
        "pairing_code": "",
    },
    "agent": {
        "name": "bridge-agent",
        "data_dir": "~/.swatch",
        "mount_root": "/mnt/nas",
        "roots": [],
        "concurrency": 0,
        "batch_size": 0,
    },
    "storage": {
        "key": "",
        "secret": "",
        "bucket": "swatch",
        "region": "nyc3",
        "endpoint": "https://nyc3.digitaloceanspaces.com",
    },
    "render": {
        "nas_host": "",
        "nas_share": "",
        "poll_interval": 30,
        "gs_path": "",
        "magick_path": "",
        "illustrator": "",
    },
}

# (section, key, env var, kind)
_ENV_OVERRIDES: list[tuple[str, str, str, str]] = [
    ("server", "url", "SWATCH_SERVER_URL", "str"),
    ("server", "agent_key", "SWATCH_AGENT_KEY", "str"),
    ("server", "pairing_code", "SWATCH_PAIRING_CODE", "str"),
    ("agent", "name", "SWATCH_AGENT_NAME", "str"),
    ("agent", "data_dir", "SWATCH_DATA_DIR", "str"),
    ("agent", "mount_root", "SWATCH_MOUNT_ROOT", "str"),
    ("agent", "roots", "SWATCH_SCAN_ROOTS", "list"),
    ("agent", "concurrency", "SWATCH_CONCURRENCY", "int"),
    ("agent", "batch_size", "SWATCH_BATCH_SIZE", "int"),
    ("storage", "key", "SWATCH_STORAGE_KEY", "str"),
    ("storage", "secret", "SWATCH_STORAGE_SECRET", "str"),
    ("storage", "bucket", "SWATCH_STORAGE_BUCKET", "str"),
    ("storage", "region", "SWATCH_STORAGE_REGION", "str"),
    ("storage", "endpoint", "SWATCH_STORAGE_ENDPOINT", "str"),
    ("render", "nas_host", "SWATCH_NAS_HOST", "str"),
    ("render", "nas_share", "SWATCH_NAS_SHARE", "str"),
    ("render", "poll_interval", "SWATCH_RENDER_POLL_INTERVAL", "int"),
]

STATE_FILENAME = "agent-state.json"


def _deep_merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def config_path() -> Path:
    # 1. SWATCH_CONFIG_PATH (containers point this into a mounted volume)
    # 2. ~/.swatch.config
    if "SWATCH_CONFIG_PATH" in os.environ:
        return Path(os.environ["SWATCH_CONFIG_PATH"])
    return Path.home() / ".swatch.config"


def _parse_env(name: str, raw: str, kind: str) -> Any:
    if kind == "list":
        return [p.strip() for p in raw.split(",") if p.strip()]
    if kind == "int":
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    return raw


def load_config() -> dict[str, Any]:
    cfg = {section: dict(values) for section, values in _DEFAULT.items()}

    path = config_path()
    if path.exists():
        try:
            with open(path, "rb") as f:
                user_cfg = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"{path}: {e}") from e
        cfg = _deep_merge(cfg, user_cfg)

    for section, key, env, kind in _ENV_OVERRIDES:
        raw = os.environ.get(env)
        if raw:
            cfg[section][key] = _parse_env(env, raw, kind)

    return cfg


# Module-level singleton — loaded once per process
_config: dict[str, Any] | None = None


def get_config() -> dict[str, Any]:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_server_url() -> str:
    return get_config()["server"]["url"]


# ---------------------------------------------------------------------------
# Validated settings
# ---------------------------------------------------------------------------

@dataclass
class AgentSettings:
    server_url: str
    agent_key: str = ""
    pairing_code: str = ""
    agent_name: str = "bridge-agent"
    data_dir: Path = Path("~/.swatch")
    mount_root: str = "/mnt/nas"
    roots: list[str] = field(default_factory=list)
    concurrency: int = 0
    batch_size: int = 0
    storage: dict[str, str] = field(default_factory=dict)
    nas_host: str = ""
    nas_share: str = ""
    render_poll_interval: int = 30
    gs_path: str = ""
    magick_path: str = ""
    illustrator: str = ""

    @property
    def state_path(self) -> Path:
        return self.data_dir / STATE_FILENAME


def _non_negative_int(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer, got {value!r}")
    if value < 0:
        raise ConfigError(f"{label} must not be negative, got {value}")
    return value


def load_settings(cfg: dict[str, Any] | None = None) -> AgentSettings:
    """Validate the merged config into an AgentSettings.

    Raises ConfigError for anything the agent cannot start with.
    """
    if cfg is None:
        cfg = load_config()
    server, agent = cfg["server"], cfg["agent"]
    storage, render = cfg["storage"], cfg["render"]

    url = (server.get("url") or "").strip()
    if not url:
        raise ConfigError(
            f"no server URL configured (set SWATCH_SERVER_URL or server.url in {config_path()})"
        )

    mount_root = agent.get("mount_root") or ""
    if not os.path.isabs(mount_root):
        raise ConfigError(f"mount root must be an absolute path, got {mount_root!r}")
    mount_root = os.path.normpath(mount_root)

    roots = agent.get("roots") or []
    if isinstance(roots, str):
        roots = [roots]
    for root in roots:
        if not is_under_boundary(root, mount_root):
            raise ConfigError(f"scan root {root!r} is not under mount root {mount_root!r}")

    settings = AgentSettings(
        server_url=url.rstrip("/"),
        agent_key=server.get("agent_key") or "",
        pairing_code=server.get("pairing_code") or "",
        agent_name=agent.get("name") or "bridge-agent",
        data_dir=Path(agent.get("data_dir") or "~/.swatch").expanduser(),
        mount_root=mount_root,
        roots=list(roots),
        concurrency=_non_negative_int(agent.get("concurrency", 0), "agent.concurrency"),
        batch_size=_non_negative_int(agent.get("batch_size", 0), "agent.batch_size"),
        storage={k: str(v) for k, v in storage.items() if v},
        nas_host=render.get("nas_host") or "",
        nas_share=render.get("nas_share") or "",
        render_poll_interval=_non_negative_int(
            render.get("poll_interval", 30), "render.poll_interval"
        ) or 30,
        gs_path=render.get("gs_path") or "",
        magick_path=render.get("magick_path") or "",
        illustrator=render.get("illustrator") or "",
    )

    # A paired agent keeps its key in the state file, not the config file
    if not settings.agent_key:
        settings.agent_key = load_agent_state(settings.data_dir).get("agent_key", "")
    return settings


# ---------------------------------------------------------------------------
# Pairing state (<data_dir>/agent-state.json)
# ---------------------------------------------------------------------------

def load_agent_state(data_dir: Path) -> dict[str, Any]:
    path = Path(data_dir) / STATE_FILENAME
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text())
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot read agent state {path}: {e}") from e


def save_agent_state(data_dir: Path, **fields: Any) -> Path:
    """Merge fields into the state file; empty values are not written."""
    data_dir = Path(data_dir)
    state = load_agent_state(data_dir)
    state.update({k: v for k, v in fields.items() if v})
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        path = data_dir / STATE_FILENAME
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(state, indent=2) + "\n")
        os.replace(tmp, path)
    except OSError as e:
        raise ConfigError(f"cannot write agent state in {data_dir}: {e}") from e
    return path
