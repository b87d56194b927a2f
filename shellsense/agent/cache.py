# shellsense/agent/cache.py
from __future__ import annotations

import hashlib
import json
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..utils.schema import AnalysisContext, MCPToolOutput

STDERR_KEY_CHARS = 500


def fingerprint(ctx: AnalysisContext) -> str:
    """Cache key over the sanitized command line, exit code and head of stderr."""
    key = json.dumps(
        {
            "command": ctx.command,
            "args": list(ctx.args),
            "exit_code": ctx.exit_code,
            "stderr": ctx.stderr[:STDERR_KEY_CHARS],
        },
        sort_keys=True,
    )
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class ResponseCache:
    """
    In-memory TTL cache of provider outputs.

    One lock per fingerprint: concurrent lookups for the same key wait for the
    first computation instead of calling the provider twice.
    """

    def __init__(self, ttl: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl = float(ttl)
        self._clock = clock
        self._entries: Dict[str, Tuple[float, MCPToolOutput]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, fp: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(fp)
            if lock is None:
                lock = self._locks[fp] = threading.Lock()
            return lock

    def _fresh(self, fp: str) -> Optional[MCPToolOutput]:
        hit = self._entries.get(fp)
        if hit is None:
            return None
        stored_at, output = hit
        if self._clock() - stored_at >= self.ttl:
            self._entries.pop(fp, None)
            return None
        return output.model_copy(update={"provenance": output.provenance.model_copy(update={"cached": True})})

    def get(self, fp: str) -> Optional[MCPToolOutput]:
        with self._lock_for(fp):
            return self._fresh(fp)

    def _evict_expired(self) -> None:
        now = self._clock()
        with self._guard:
            for fp, (stored_at, _) in list(self._entries.items()):
                if now - stored_at >= self.ttl:
                    self._entries.pop(fp, None)
            # locks of keys with no entry left, unless someone is computing under them
            for fp, lock in list(self._locks.items()):
                if fp not in self._entries and not lock.locked():
                    del self._locks[fp]

    def put(self, fp: str, output: MCPToolOutput) -> None:
        with self._lock_for(fp):
            self._entries[fp] = (self._clock(), output)
        self._evict_expired()

    def get_or_compute(self, fp: str, compute: Callable[[], MCPToolOutput]) -> Tuple[MCPToolOutput, bool]:
        """Returns (output, was_cached). Exceptions from `compute` are not cached."""
        with self._lock_for(fp):
            hit = self._fresh(fp)
            if hit is not None:
                return hit, True
            output = compute()
            self._entries[fp] = (self._clock(), output)
        self._evict_expired()
        return output, False

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
