"""
Shared fixtures: an isolated /data-style layout under tmp_path and the
fake OpenClaw CLI (tests/fake_openclaw.py) wired in as the backend.
"""

import json
import socket
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

import scrub
import settings

FAKE_OPENCLAW = Path(__file__).parent / "fake_openclaw.py"
PASSWORD = "test-password"


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@dataclass
class WrapperEnv:
    data: Path
    state: Path
    workspace: Path
    port: int
    invocations: Path

    @property
    def config(self) -> Path:
        return self.state / settings.CONFIG_FILENAME

    def configure(self, content: str = "{}\n") -> Path:
        self.state.mkdir(parents=True, exist_ok=True)
        self.config.write_text(content)
        return self.config

    def calls(self) -> list[list[str]]:
        if not self.invocations.exists():
            return []
        return [json.loads(line)["argv"] for line in self.invocations.read_text().splitlines() if line]


@pytest.fixture
def wrapper_env(tmp_path, monkeypatch) -> WrapperEnv:
    data = tmp_path / "data"
    env = WrapperEnv(
        data=data,
        state=data / ".openclaw",
        workspace=data / "workspace",
        port=free_port(),
        invocations=tmp_path / "invocations.jsonl",
    )

    monkeypatch.setattr(settings, "DATA_ROOT", data)
    monkeypatch.setattr(settings, "STATE_DIR", env.state)
    monkeypatch.setattr(settings, "WORKSPACE_DIR", env.workspace)
    monkeypatch.setattr(settings, "CONFIG_PATH_OVERRIDE", "")
    monkeypatch.setattr(settings, "AUDIT_LOG", env.state / "audit.jsonl")
    monkeypatch.setattr(settings, "SETUP_PASSWORD", PASSWORD)
    monkeypatch.setattr(settings, "OPENCLAW_NODE", sys.executable)
    monkeypatch.setattr(settings, "OPENCLAW_ENTRY", str(FAKE_OPENCLAW))
    monkeypatch.setattr(settings, "INTERNAL_GATEWAY_HOST", "127.0.0.1")
    monkeypatch.setattr(settings, "INTERNAL_GATEWAY_PORT", env.port)
    monkeypatch.setattr(scrub, "SCRUB_RULES_PATH", "")

    monkeypatch.delenv("OPENCLAW_GATEWAY_TOKEN", raising=False)
    monkeypatch.delenv("FAKE_OPENCLAW_NO_LISTEN", raising=False)
    monkeypatch.setenv("FAKE_OPENCLAW_LOG", str(env.invocations))

    settings.reset_gateway_token()
    yield env
    settings.reset_gateway_token()
