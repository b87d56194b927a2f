# shellsense/core/store.py
"""
SQLite-backed event store.

Append-only: events are inserted once and never updated. Each call opens its
own connection (WAL journal, synchronous=FULL) so a save is on disk before it
returns and readers never wait on writers. Writes are serialized per session.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import closing
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.errors import CaptureGap, InvalidEvent, StoreUnavailable
from ..utils.schema import AnalysisResult, CommandRun
from .events import (
    COMMAND_END,
    COMMAND_START,
    EXIT_STATUS,
    STDERR_CHUNK,
    STDOUT_CHUNK,
    TerminalEvent,
    command_ref,
    parse_event_json,
)

log = logging.getLogger(__name__)

_CHUNK_TYPES = {"stdout": STDOUT_CHUNK, "stderr": STDERR_CHUNK}

# position of each kind inside a command's event list
_COMMAND_ORDER = {
    COMMAND_START: 0,
    STDOUT_CHUNK: 1,
    STDERR_CHUNK: 2,
    COMMAND_END: 3,
    EXIT_STATUS: 4,
}


def _init_db(con: sqlite3.Connection) -> None:
    con.execute(
        """
        CREATE TABLE IF NOT EXISTS events(
          seq         INTEGER PRIMARY KEY AUTOINCREMENT,
          id          TEXT NOT NULL UNIQUE,
          type        TEXT NOT NULL,
          session_id  TEXT NOT NULL,
          timestamp   INTEGER NOT NULL,
          command_id  TEXT,
          chunk_index INTEGER,
          exit_code   INTEGER,
          data        TEXT NOT NULL,
          UNIQUE(command_id, type, chunk_index)
        );
        """
    )
    con.execute("CREATE INDEX IF NOT EXISTS ix_events_session ON events(session_id, timestamp);")
    con.execute("CREATE INDEX IF NOT EXISTS ix_events_command ON events(command_id);")
    con.execute("CREATE INDEX IF NOT EXISTS ix_events_time ON events(timestamp);")
    con.execute(
        """
        CREATE TABLE IF NOT EXISTS analyses(
          command_id  TEXT PRIMARY KEY,
          session_id  TEXT,
          created_at  INTEGER NOT NULL,
          data        TEXT NOT NULL
        );
        """
    )


class EventStore:
    def __init__(self, path: str):
        self.path = os.path.expanduser(str(path))
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        try:
            with closing(self._conn()) as con, con:
                _init_db(con)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot initialise event store at {self.path}: {e}") from e

    # ---------- plumbing ----------
    def _conn(self) -> sqlite3.Connection:
        try:
            Path(os.path.dirname(self.path) or ".").mkdir(parents=True, exist_ok=True)
            con = sqlite3.connect(self.path, timeout=30)
        except (OSError, sqlite3.Error) as e:
            raise StoreUnavailable(f"cannot open {self.path}: {e}") from e
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=FULL;")
        return con

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            with closing(self._conn()) as con:
                return con.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e

    def _write(self, sql: str, params: tuple = ()) -> int:
        try:
            with closing(self._conn()) as con, con:
                return con.execute(sql, params).rowcount
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e

    @staticmethod
    def _events(rows: List[sqlite3.Row]) -> List[TerminalEvent]:
        return [parse_event_json(r["data"]) for r in rows]

    # ---------- writes ----------
    def _check_reference(self, con: sqlite3.Connection, event: TerminalEvent, ref: str) -> None:
        row = con.execute(
            "SELECT session_id, timestamp FROM events WHERE id=? AND type=?;", (ref, COMMAND_START)
        ).fetchone()
        if row is None:
            raise InvalidEvent(f"{event.type} {event.id} references unknown command {ref}")
        if row["session_id"] != event.session_id:
            raise InvalidEvent(f"{event.type} {event.id} references command {ref} of another session")
        if row["timestamp"] > event.timestamp:
            raise InvalidEvent(f"{event.type} {event.id} predates its command {ref}")

    def save_event(self, event: TerminalEvent) -> None:
        """Persist one event durably, or raise. Nothing is ever overwritten."""
        ref = command_ref(event)
        chunk_index = getattr(event, "chunk_index", None)
        exit_code = getattr(event, "exit_code", None) if event.type == EXIT_STATUS else None

        with self._session_lock(event.session_id):
            try:
                with closing(self._conn()) as con, con:
                    if event.type != COMMAND_START and ref is not None:
                        self._check_reference(con, event, ref)
                    if chunk_index is not None:
                        row = con.execute(
                            "SELECT MAX(chunk_index) AS m FROM events WHERE command_id=? AND type=?;",
                            (ref, event.type),
                        ).fetchone()
                        expected = 0 if row["m"] is None else row["m"] + 1
                        if chunk_index != expected:
                            gap = CaptureGap(ref, event.stream, expected, chunk_index)
                            log.warning("%s", gap)
                    con.execute(
                        """
                        INSERT INTO events(id, type, session_id, timestamp, command_id, chunk_index, exit_code, data)
                        VALUES(?,?,?,?,?,?,?,?);
                        """,
                        (
                            event.id,
                            event.type,
                            event.session_id,
                            event.timestamp,
                            ref,
                            chunk_index,
                            exit_code,
                            event.model_dump_json(),
                        ),
                    )
            except sqlite3.IntegrityError as e:
                raise InvalidEvent(f"duplicate event {event.id} ({event.type}): {e}") from e
            except sqlite3.Error as e:
                raise StoreUnavailable(f"could not persist {event.id}: {e}") from e

    def clear_events(self, older_than: Optional[int] = None) -> int:
        """Drop events (and stored analyses) older than `older_than` ms, or everything."""
        try:
            with closing(self._conn()) as con, con:
                if older_than is None:
                    n = con.execute("DELETE FROM events;").rowcount
                    con.execute("DELETE FROM analyses;")
                else:
                    n = con.execute("DELETE FROM events WHERE timestamp < ?;", (older_than,)).rowcount
                    con.execute("DELETE FROM analyses WHERE created_at < ?;", (older_than,))
                return n
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e

    def prune(self, max_events: int) -> int:
        """Keep only the newest `max_events` events. 0 means unbounded."""
        if max_events <= 0:
            return 0
        return self._write(
            """
            DELETE FROM events WHERE seq NOT IN (
              SELECT seq FROM events ORDER BY timestamp DESC, seq DESC LIMIT ?
            );
            """,
            (int(max_events),),
        )

    # ---------- reads ----------
    def get_events(
        self, type: Optional[str] = None, since: Optional[int] = None, limit: Optional[int] = None
    ) -> List[TerminalEvent]:
        sql = "SELECT data FROM events WHERE 1=1"
        params: List[Any] = []
        if type:
            sql += " AND type=?"
            params.append(type)
        if since is not None:
            sql += " AND timestamp >= ?"
            params.append(int(since))
        sql += " ORDER BY timestamp DESC, seq DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return self._events(self._query(sql + ";", tuple(params)))

    def get_events_by_command(self, command_id: str) -> List[TerminalEvent]:
        rows = self._query("SELECT type, chunk_index, seq, data FROM events WHERE command_id=?;", (command_id,))
        rows = sorted(
            rows,
            key=lambda r: (_COMMAND_ORDER.get(r["type"], 9), r["chunk_index"] if r["chunk_index"] is not None else -1, r["seq"]),
        )
        return self._events(rows)

    def get_events_by_session(self, session_id: str, limit: Optional[int] = None) -> List[TerminalEvent]:
        sql = "SELECT data FROM events WHERE session_id=? ORDER BY timestamp DESC, seq DESC"
        params: tuple = (session_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (session_id, int(limit))
        return self._events(self._query(sql + ";", params))

    def next_chunk_index(self, command_id: str, stream: str) -> int:
        rows = self._query(
            "SELECT MAX(chunk_index) AS m FROM events WHERE command_id=? AND type=?;",
            (command_id, _CHUNK_TYPES[stream]),
        )
        m = rows[0]["m"] if rows else None
        return 0 if m is None else m + 1

    def last_command_id(self, session_id: Optional[str] = None, failed_only: bool = False) -> Optional[str]:
        """Newest command id, optionally restricted to a session or to failures."""
        if failed_only:
            sql = "SELECT command_id AS cid FROM events WHERE type=? AND exit_code != 0"
            params: List[Any] = [EXIT_STATUS]
        else:
            sql = "SELECT id AS cid FROM events WHERE type=?"
            params = [COMMAND_START]
        if session_id:
            sql += " AND session_id=?"
            params.append(session_id)
        rows = self._query(sql + " ORDER BY timestamp DESC, seq DESC LIMIT 1;", tuple(params))
        return rows[0]["cid"] if rows else None

    def command_runs(
        self, command: Optional[str] = None, upto: Optional[str] = None, limit: Optional[int] = None
    ) -> List[CommandRun]:
        """
        Commands newest first, each joined with its exit code and duration
        (None while unknown). `upto` keeps only commands recorded no later than
        the given command id, that command included.
        """
        where = ""
        params: List[Any] = []
        if command is not None:
            where += " AND json_extract(s.data, '$.command') = ?"
            params.append(command)
        if upto is not None:
            where += " AND s.seq <= (SELECT seq FROM events WHERE id = ?)"
            params.append(upto)
        return self._runs(where, params, limit)

    def command_run(self, command_id: str) -> Optional[CommandRun]:
        runs = self._runs(" AND s.id = ?", [command_id], 1)
        return runs[0] if runs else None

    def _runs(self, where: str, params: List[Any], limit: Optional[int]) -> List[CommandRun]:
        sql = (
            """
            SELECT s.id AS cid, s.timestamp AS ts,
                   json_extract(s.data, '$.command') AS command,
                   json_extract(s.data, '$.args') AS args,
                   json_extract(s.data, '$.cwd') AS cwd,
                   (SELECT x.exit_code FROM events x
                     WHERE x.command_id = s.id AND x.type = ? ORDER BY x.seq DESC LIMIT 1) AS exit_code,
                   (SELECT json_extract(e.data, '$.duration') FROM events e
                     WHERE e.command_id = s.id AND e.type = ? ORDER BY e.seq DESC LIMIT 1) AS duration
            FROM events s WHERE s.type = ?
            """
            + where
            + " ORDER BY s.timestamp DESC, s.seq DESC"
        )
        args: List[Any] = [EXIT_STATUS, COMMAND_END, COMMAND_START] + list(params)
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))
        return [
            CommandRun(
                command_id=r["cid"],
                command=r["command"] or "",
                args=json.loads(r["args"]) if r["args"] else [],
                cwd=r["cwd"] or "",
                timestamp=r["ts"],
                exit_code=r["exit_code"],
                duration=r["duration"],
            )
            for r in self._query(sql + ";", tuple(args))
        ]

    def get_stats(self) -> Dict[str, Any]:
        by_type = {r["type"]: r["n"] for r in self._query("SELECT type, COUNT(*) AS n FROM events GROUP BY type;")}
        sessions = self._query("SELECT COUNT(DISTINCT session_id) AS n FROM events;")[0]["n"]
        analyses = self._query("SELECT COUNT(*) AS n FROM analyses;")[0]["n"]
        return {
            "total_events": sum(by_type.values()),
            "events_by_type": by_type,
            "sessions": sessions,
            "analyses": analyses,
        }

    # ---------- analyses ----------
    def save_analysis(self, result: AnalysisResult) -> None:
        """Store the latest result for a command, superseding any earlier one."""
        self._write(
            "INSERT OR REPLACE INTO analyses(command_id, session_id, created_at, data) VALUES(?,?,?,?);",
            (result.command_id, result.session_id, result.created_at, result.model_dump_json()),
        )

    def get_analysis(self, command_id: str) -> Optional[AnalysisResult]:
        rows = self._query("SELECT data FROM analyses WHERE command_id=?;", (command_id,))
        return AnalysisResult.model_validate_json(rows[0]["data"]) if rows else None

    def latest_analyses(self, limit: int = 10) -> List[AnalysisResult]:
        rows = self._query("SELECT data FROM analyses ORDER BY created_at DESC LIMIT ?;", (int(limit),))
        return [AnalysisResult.model_validate_json(r["data"]) for r in rows]
