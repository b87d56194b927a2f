# shellsense/core/observer.py
"""
Turns shell activity into terminal events.

The observer never raises into the shell: a sink failure is logged and the
event is dropped. Env snapshots and output chunks are sanitized here, before
anything is persisted, unless redaction is switched off.
"""
from __future__ import annotations

import logging
import os
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from ..utils.errors import ShellSenseError
from ..utils.redact import Sanitizer
from .events import (
    CommandEnd,
    CommandStart,
    CwdChange,
    EnvChange,
    ExitStatus,
    SessionEnd,
    SessionStart,
    StderrChunk,
    StdoutChunk,
    TerminalEvent,
    now_ms,
)
from .hooks import detect_shell

log = logging.getLogger(__name__)


def new_session_id() -> str:
    return f"session_{now_ms()}_{uuid.uuid4().hex[:9]}"


class Observer:
    def __init__(
        self,
        store,
        session_id: Optional[str] = None,
        shell: Optional[str] = None,
        pane_id: Optional[str] = None,
        tab_id: Optional[str] = None,
        sanitizer: Optional[Sanitizer] = None,
        chunk_size: int = 4096,
        redact: bool = True,
        on_exit: Optional[Callable[[ExitStatus], None]] = None,
    ):
        self.store = store
        self.session_id = session_id or new_session_id()
        self.shell = shell or detect_shell()
        self.pane_id = pane_id
        self.tab_id = tab_id
        self.sanitizer = sanitizer or Sanitizer()
        self.chunk_size = max(1, int(chunk_size))
        self.redact = redact
        self.on_exit = on_exit
        self._session_started: Optional[int] = None
        self._starts: Dict[str, int] = {}
        self._next_index: Dict[Tuple[str, str], int] = {}

    # ---- helpers ----
    def _base(self) -> dict:
        return {
            "session_id": self.session_id,
            "shell": self.shell,
            "pane_id": self.pane_id,
            "tab_id": self.tab_id,
        }

    def _emit(self, event: TerminalEvent) -> bool:
        try:
            self.store.save_event(event)
            return True
        except ShellSenseError as e:
            log.warning("dropped %s event %s: %s", event.type, event.id, e)
            return False

    def _env(self, env: Optional[Dict[str, str]]) -> Dict[str, str]:
        env = dict(env or {})
        if not self.redact:
            return env
        clean, _ = self.sanitizer.sanitize_env(env)
        return clean

    def _text(self, text: str, field: str) -> str:
        if not self.redact:
            return text
        clean, _ = self.sanitizer.redact_text(text, field)
        return clean

    # ---- session ----
    def start_session(self, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> str:
        ev = SessionStart(cwd=cwd or os.getcwd(), env=self._env(env), **self._base())
        self._session_started = ev.timestamp
        self._emit(ev)
        return self.session_id

    def end_session(self, duration: Optional[int] = None) -> None:
        if duration is None:
            duration = now_ms() - self._session_started if self._session_started else 0
        self._emit(SessionEnd(duration=max(0, duration), **self._base()))

    # ---- commands ----
    def command_start(
        self,
        command: str,
        args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        pid: Optional[int] = None,
    ) -> str:
        ev = CommandStart(
            command=command,
            args=[self._text(a, "command") for a in (args or [])],
            cwd=cwd or os.getcwd(),
            env=self._env(env),
            pid=pid,
            **self._base(),
        )
        self._starts[ev.id] = ev.timestamp
        self._emit(ev)
        return ev.id

    def write_output(self, command_id: str, stream: str, data: str) -> int:
        """Split `data` into chunk events; returns how many were emitted."""
        if stream not in ("stdout", "stderr") or not data:
            return 0
        key = (command_id, stream)
        if key not in self._next_index:
            try:
                self._next_index[key] = self.store.next_chunk_index(command_id, stream)
            except ShellSenseError as e:
                log.warning("chunk index lookup failed for %s/%s: %s", command_id, stream, e)
                self._next_index[key] = 0

        cls = StdoutChunk if stream == "stdout" else StderrChunk
        n = 0
        for i in range(0, len(data), self.chunk_size):
            idx = self._next_index[key]
            ev = cls(
                command_id=command_id,
                chunk=self._text(data[i:i + self.chunk_size], stream),
                chunk_index=idx,
                **self._base(),
            )
            self._next_index[key] = idx + 1
            if self._emit(ev):
                n += 1
        return n

    def exit_status(self, command_id: str, exit_code: int, duration: Optional[int] = None) -> None:
        """Emit exit_status then command_end for a finished command."""
        ev = ExitStatus(command_id=command_id, exit_code=int(exit_code), success=int(exit_code) == 0, **self._base())
        saved = self._emit(ev)
        if duration is None:
            started = self._starts.pop(command_id, None)
            duration = ev.timestamp - started if started is not None else 0
        self._emit(CommandEnd(command_id=command_id, duration=max(0, duration), **self._base()))
        for key in [k for k in self._next_index if k[0] == command_id]:
            del self._next_index[key]
        if saved and self.on_exit is not None:
            try:
                self.on_exit(ev)
            except Exception:
                log.exception("exit callback failed for %s", command_id)

    # ---- environment ----
    def cwd_change(self, cwd: str, previous_cwd: Optional[str] = None) -> None:
        self._emit(CwdChange(cwd=cwd, previous_cwd=previous_cwd, **self._base()))

    def env_change(self, env: Dict[str, str], changed_keys: Optional[List[str]] = None) -> None:
        keys = list(changed_keys) if changed_keys is not None else sorted(env)
        self._emit(EnvChange(env=self._env(env), changed_keys=keys, **self._base()))
