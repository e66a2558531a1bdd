"""
Wrapper configuration and configured-state resolution.

All values come from the environment. Paths are resolved once at import;
tests and embedders may overwrite the module attributes directly.
"""

import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

# Public listener
PORT = int(os.environ.get("PORT") or os.environ.get("OPENCLAW_PUBLIC_PORT") or "3000")

# State / workspace (OpenClaw defaults to ~/.openclaw)
STATE_DIR = Path(os.environ.get("OPENCLAW_STATE_DIR", "").strip() or Path.home() / ".openclaw")
WORKSPACE_DIR = Path(os.environ.get("OPENCLAW_WORKSPACE_DIR", "").strip() or STATE_DIR / "workspace")
CONFIG_PATH_OVERRIDE = os.environ.get("OPENCLAW_CONFIG_PATH", "").strip()

# Admin surface
SETUP_PASSWORD = os.environ.get("SETUP_PASSWORD", "").strip()

# Internal gateway address (only reachable through the proxy)
INTERNAL_GATEWAY_HOST = os.environ.get("INTERNAL_GATEWAY_HOST", "127.0.0.1")
INTERNAL_GATEWAY_PORT = int(os.environ.get("INTERNAL_GATEWAY_PORT", "18789"))

# Backend CLI
OPENCLAW_ENTRY = os.environ.get("OPENCLAW_ENTRY", "").strip() or "/openclaw/dist/entry.js"
OPENCLAW_NODE = os.environ.get("OPENCLAW_NODE", "").strip() or "node"

# Restore is only allowed into this mount point
DATA_ROOT = Path(os.environ.get("OPENCLAW_DATA_ROOT", "/data"))

AUDIT_LOG = Path(os.environ.get("AUDIT_LOG", "").strip() or STATE_DIR / "audit.jsonl")

TOKEN_FILENAME = "gateway.token"
CONFIG_FILENAME = "openclaw.json"

_gateway_token: str | None = None


def gateway_target() -> str:
    """Base URL of the internal gateway."""
    return f"http://{INTERNAL_GATEWAY_HOST}:{INTERNAL_GATEWAY_PORT}"


def claw_args(args: list[str]) -> list[str]:
    """Argument vector for running the OpenClaw CLI entry with OPENCLAW_NODE."""
    return [OPENCLAW_ENTRY, *args]


def child_env() -> dict[str, str]:
    """Environment for every OpenClaw subprocess."""
    env = dict(os.environ)
    env["OPENCLAW_STATE_DIR"] = str(STATE_DIR)
    env["OPENCLAW_WORKSPACE_DIR"] = str(WORKSPACE_DIR)
    # CLI commands (status, devices, ...) authenticate to the gateway with it.
    env["OPENCLAW_GATEWAY_TOKEN"] = gateway_token()
    return env


def timestamp_slug(now: datetime | None = None) -> str:
    """UTC ISO timestamp usable in a filename (":" and "." become "-")."""
    now = now or datetime.now(timezone.utc)
    return re.sub(r"[:.]", "-", now.isoformat(timespec="milliseconds").replace("+00:00", "Z"))


# ============================================================
# Config artifact
# ============================================================

@dataclass(frozen=True)
class ConfigArtifact:
    path: Path
    exists: bool


def config_candidates() -> list[Path]:
    """Candidate config locations, in lookup order."""
    if CONFIG_PATH_OVERRIDE:
        return [Path(CONFIG_PATH_OVERRIDE)]
    return [STATE_DIR / CONFIG_FILENAME]


def config_path() -> Path:
    """First existing candidate, or the canonical default if none exists yet."""
    candidates = config_candidates()
    for candidate in candidates:
        try:
            if candidate.exists():
                return candidate
        except OSError:
            continue
    return candidates[0]


def is_configured() -> bool:
    """The presence of a config artifact is the only 'configured' signal."""
    try:
        return any(candidate.exists() for candidate in config_candidates())
    except OSError:
        return False


def config_artifact() -> ConfigArtifact:
    path = config_path()
    try:
        exists = path.exists()
    except OSError:
        exists = False
    return ConfigArtifact(path=path, exists=exists)


# ============================================================
# Gateway token
# ============================================================

def token_path() -> Path:
    return STATE_DIR / TOKEN_FILENAME


def token_from_env() -> bool:
    return bool(os.environ.get("OPENCLAW_GATEWAY_TOKEN", "").strip())


def resolve_gateway_token() -> str:
    """
    Resolve the gateway bearer token.

    Order: OPENCLAW_GATEWAY_TOKEN, then the persisted token file, then a
    freshly generated token that is persisted (mode 0600) so it survives
    restarts of the wrapper.
    """
    env_token = os.environ.get("OPENCLAW_GATEWAY_TOKEN", "").strip()
    if env_token:
        return env_token

    path = token_path()
    try:
        existing = path.read_text(encoding="utf-8").strip()
        if existing:
            return existing
    except OSError:
        pass

    generated = secrets.token_hex(32)
    try:
        STATE_DIR.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(generated)
    except OSError as e:
        print(f"[wrapper] could not persist gateway token: {e}")
    return generated


def gateway_token() -> str:
    """Process-wide gateway token, resolved on first use."""
    global _gateway_token
    if _gateway_token is None:
        _gateway_token = resolve_gateway_token()
    return _gateway_token


def reset_gateway_token():
    """Forget the cached token (the next call re-resolves it)."""
    global _gateway_token
    _gateway_token = None
