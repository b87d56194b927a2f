# tests/conftest.py
from __future__ import annotations

from typing import Callable, Optional

import pytest

from shellsense.core.observer import Observer
from shellsense.core.store import EventStore

CREDENTIAL_VARS = ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "OLLAMA_URL", "OLLAMA_HOST", "SHELLSENSE_SESSION")


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Isolated SHELLSENSE_HOME with no provider credentials leaking in."""
    h = tmp_path / "home"
    h.mkdir()
    monkeypatch.setenv("SHELLSENSE_HOME", str(h))
    for var in CREDENTIAL_VARS:
        monkeypatch.delenv(var, raising=False)
    return h


@pytest.fixture
def store(tmp_path) -> EventStore:
    return EventStore(str(tmp_path / "events.sqlite"))


@pytest.fixture
def observer(store) -> Observer:
    return Observer(store, session_id="session_test", shell="bash")


@pytest.fixture
def run_command(observer) -> Callable[..., str]:
    """Record one finished command through the observer; returns its command id."""

    def _run(
        line: str,
        exit_code: int = 0,
        stderr: str = "",
        stdout: str = "",
        cwd: str = "/tmp",
        env: Optional[dict] = None,
        duration: Optional[int] = None,
    ) -> str:
        words = line.split()
        cid = observer.command_start(words[0], words[1:], cwd=cwd, env=env)
        if stdout:
            observer.write_output(cid, "stdout", stdout)
        if stderr:
            observer.write_output(cid, "stderr", stderr)
        observer.exit_status(cid, exit_code, duration=duration)
        return cid

    return _run
