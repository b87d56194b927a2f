# shellsense/core/events.py
"""
Canonical terminal event schema.

One frozen pydantic model per event kind, all sharing the same base fields and
joined into a single discriminated union on ``type``. Events are created at
capture time and never mutated afterwards.
"""
from __future__ import annotations

import threading
import time
import uuid
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

ShellKind = Literal["bash", "zsh", "nushell", "unknown"]
Stream = Literal["stdout", "stderr"]

COMMAND_START = "command_start"
COMMAND_END = "command_end"
STDOUT_CHUNK = "stdout_chunk"
STDERR_CHUNK = "stderr_chunk"
EXIT_STATUS = "exit_status"
CWD_CHANGE = "cwd_change"
ENV_CHANGE = "env_change"
SESSION_START = "session_start"
SESSION_END = "session_end"

EVENT_TYPES = (
    COMMAND_START,
    COMMAND_END,
    STDOUT_CHUNK,
    STDERR_CHUNK,
    EXIT_STATUS,
    CWD_CHANGE,
    ENV_CHANGE,
    SESSION_START,
    SESSION_END,
)

_clock_lock = threading.Lock()
_last_ms = 0


def now_ms() -> int:
    """Millisecond epoch that never goes backwards within this process."""
    global _last_ms
    with _clock_lock:
        t = int(time.time() * 1000)
        if t < _last_ms:
            t = _last_ms
        _last_ms = t
        return t


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_event_id)
    timestamp: int = Field(default_factory=now_ms)
    session_id: str
    shell: ShellKind = "unknown"
    pane_id: Optional[str] = None
    tab_id: Optional[str] = None


class CommandStart(_Event):
    type: Literal["command_start"] = COMMAND_START
    command: str
    args: List[str] = Field(default_factory=list)
    cwd: str = ""
    env: Dict[str, str] = Field(default_factory=dict)
    pid: Optional[int] = None


class CommandEnd(_Event):
    type: Literal["command_end"] = COMMAND_END
    command_id: str
    duration: int = 0


class StdoutChunk(_Event):
    type: Literal["stdout_chunk"] = STDOUT_CHUNK
    command_id: str
    chunk: str
    chunk_index: int = Field(ge=0)

    @property
    def stream(self) -> str:
        return "stdout"


class StderrChunk(_Event):
    type: Literal["stderr_chunk"] = STDERR_CHUNK
    command_id: str
    chunk: str
    chunk_index: int = Field(ge=0)

    @property
    def stream(self) -> str:
        return "stderr"


class ExitStatus(_Event):
    type: Literal["exit_status"] = EXIT_STATUS
    command_id: str
    exit_code: int
    success: bool


class CwdChange(_Event):
    type: Literal["cwd_change"] = CWD_CHANGE
    cwd: str
    previous_cwd: Optional[str] = None


class EnvChange(_Event):
    type: Literal["env_change"] = ENV_CHANGE
    env: Dict[str, str] = Field(default_factory=dict)
    changed_keys: List[str] = Field(default_factory=list)


class SessionStart(_Event):
    type: Literal["session_start"] = SESSION_START
    cwd: str = ""
    env: Dict[str, str] = Field(default_factory=dict)


class SessionEnd(_Event):
    type: Literal["session_end"] = SESSION_END
    duration: int = 0


TerminalEvent = Annotated[
    Union[
        CommandStart,
        CommandEnd,
        StdoutChunk,
        StderrChunk,
        ExitStatus,
        CwdChange,
        EnvChange,
        SessionStart,
        SessionEnd,
    ],
    Field(discriminator="type"),
]

ChunkEvent = Union[StdoutChunk, StderrChunk]

_ADAPTER: TypeAdapter = TypeAdapter(TerminalEvent)


def parse_event(data: Dict[str, Any]) -> TerminalEvent:
    return _ADAPTER.validate_python(data)


def parse_event_json(text: str) -> TerminalEvent:
    return _ADAPTER.validate_json(text)


def dump_event(event: TerminalEvent) -> str:
    return event.model_dump_json()


def command_ref(event: TerminalEvent) -> Optional[str]:
    """Command id an event belongs to, or None for session-level events."""
    if event.type == COMMAND_START:
        return event.id
    if event.type in (COMMAND_END, STDOUT_CHUNK, STDERR_CHUNK, EXIT_STATUS):
        return event.command_id
    return None


class ChunkGap(BaseModel):
    model_config = ConfigDict(frozen=True)

    command_id: str
    stream: str
    expected: int
    got: int


def find_gaps(chunks: Iterable[ChunkEvent]) -> List[ChunkGap]:
    """
    Walk each (command, stream) sequence in index order and report every spot
    where the next index is not exactly previous + 1 (missing data, or a
    repeated index). Nothing is resequenced here.
    """
    by_key: Dict[tuple, List[int]] = {}
    for c in chunks:
        by_key.setdefault((c.command_id, c.stream), []).append(c.chunk_index)

    gaps: List[ChunkGap] = []
    for (command_id, stream), indices in sorted(by_key.items()):
        expected = 0
        for idx in sorted(indices):
            if idx != expected:
                gaps.append(ChunkGap(command_id=command_id, stream=stream, expected=expected, got=idx))
            expected = idx + 1
    return gaps
