# shellsense/core/spool.py
"""
Append-only JSONL hand-off between short-lived `shellsense capture` processes
(one per shell hook) and the long-running agent, which tails the file and
persists what it reads.

Once the agent has consumed a large enough spool it rotates it to
`<path>.1`, replacing the previous generation, and starts over at offset 0.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Tuple

from pydantic import ValidationError

from ..utils.errors import StoreUnavailable
from .events import STDERR_CHUNK, STDOUT_CHUNK, TerminalEvent, parse_event_json

log = logging.getLogger(__name__)

# how far back next_chunk_index looks in each generation
TAIL_BYTES = 256 * 1024


def _tail_lines(path: str, limit: int) -> List[bytes]:
    try:
        with open(path, "rb") as f:
            size = f.seek(0, os.SEEK_END)
            start = max(0, size - limit)
            f.seek(start)
            data = f.read()
    except FileNotFoundError:
        return []
    except OSError as e:
        raise StoreUnavailable(f"cannot read spool {path}: {e}") from e
    lines = data.splitlines()
    if start > 0 and lines:
        lines = lines[1:]  # cut mid-line
    return lines


class Spool:
    def __init__(self, path: str):
        self.path = os.path.expanduser(str(path))

    @property
    def rotated_path(self) -> str:
        return self.path + ".1"

    def save_event(self, event: TerminalEvent) -> None:
        line = event.model_dump_json() + "\n"
        try:
            Path(os.path.dirname(self.path) or ".").mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StoreUnavailable(f"cannot append to spool {self.path}: {e}") from e

    def next_chunk_index(self, command_id: str, stream: str) -> int:
        """Next index for a command's stream, looking only at recent spool data."""
        kind = STDOUT_CHUNK if stream == "stdout" else STDERR_CHUNK
        needle = command_id.encode("utf-8")
        nxt = 0
        for path in (self.rotated_path, self.path):
            for raw in _tail_lines(path, TAIL_BYTES):
                if needle not in raw:
                    continue
                try:
                    e = parse_event_json(raw.decode("utf-8", errors="replace"))
                except ValidationError:
                    continue
                if e.type == kind and e.command_id == command_id:
                    nxt = max(nxt, e.chunk_index + 1)
        return nxt

    def read_from(self, offset: int) -> Tuple[List[TerminalEvent], int]:
        """
        Parse complete lines starting at byte `offset`. Returns the events and
        the offset just past the last complete line; a half-written trailing
        line is left for the next call. Unparseable lines are logged and skipped.
        """
        try:
            with open(self.path, "rb") as f:
                f.seek(offset)
                data = f.read()
        except FileNotFoundError:
            return [], 0
        except OSError as e:
            raise StoreUnavailable(f"cannot read spool {self.path}: {e}") from e

        end = data.rfind(b"\n")
        if end < 0:
            return [], offset
        events: List[TerminalEvent] = []
        for raw in data[: end + 1].splitlines():
            if not raw.strip():
                continue
            try:
                events.append(parse_event_json(raw.decode("utf-8", errors="replace")))
            except ValidationError as e:
                log.warning("skipping malformed spool line: %s", e.errors()[:1])
        return events, offset + end + 1

    def size(self) -> int:
        try:
            return os.path.getsize(self.path)
        except OSError:
            return 0

    def rotate(self) -> "Spool":
        """Move the live file to `<path>.1`; returns a Spool over the rotated file."""
        try:
            os.replace(self.path, self.rotated_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StoreUnavailable(f"cannot rotate spool {self.path}: {e}") from e
        return Spool(self.rotated_path)

    def truncate(self) -> None:
        if os.path.exists(self.path):
            with open(self.path, "w", encoding="utf-8"):
                pass
        if os.path.exists(self.rotated_path):
            os.remove(self.rotated_path)
