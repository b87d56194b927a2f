# shellsense/agent/agent.py
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional

from rich import print

from ..core.events import COMMAND_END, EXIT_STATUS, TerminalEvent, now_ms
from ..core.spool import Spool
from ..core.store import EventStore
from ..providers import create_provider
from ..status import StatusPublisher
from ..utils.config import AgentConfig, load_config
from ..utils.env import load_env
from ..utils.errors import InvalidEvent, ShellSenseError, StoreUnavailable
from ..utils.schema import AnalysisResult, AnalysisSuggestion
from .pipeline import AnalysisPipeline, dedupe, rank

log = logging.getLogger(__name__)

RECENT_WINDOW_MS = 60 * 60 * 1000
RECENT_ANALYSES = 10
SWEEP_INTERVAL = 300.0
DAY_MS = 24 * 60 * 60 * 1000


class AnalysisService:
    """
    Glue between capture and analysis: persists events, schedules one
    analysis per failing command (and a history pass per finished one),
    stores results and refreshes the status files. Nothing here raises into the capture path.
    """

    def __init__(
        self,
        store: EventStore,
        pipeline: AnalysisPipeline,
        publisher: Optional[StatusPublisher] = None,
        max_workers: int = 2,
        analyze_failures: bool = True,
        analyze_patterns: bool = False,
        recent_window: int = RECENT_WINDOW_MS,
    ):
        self.store = store
        self.pipeline = pipeline
        self.publisher = publisher
        self.analyze_failures = analyze_failures
        self.analyze_patterns = analyze_patterns
        self.recent_window = recent_window
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="shellsense-analysis")
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._publish_lock = threading.Lock()

    # ---- capture side ----
    def handle_event(self, event: TerminalEvent) -> Optional[Future]:
        try:
            self.store.save_event(event)
        except InvalidEvent as e:
            log.warning("rejected event %s: %s", event.id, e)
            return None
        except StoreUnavailable as e:
            log.error("store unavailable, event %s dropped: %s", event.id, e)
            return None
        if self.analyze_failures and event.type == EXIT_STATUS and not event.success:
            return self.submit(event.command_id)
        if self.analyze_patterns and event.type == COMMAND_END:
            return self.submit_patterns(event.command_id)
        return None

    # ---- analysis side ----
    def submit(self, command_id: str) -> Future:
        return self._submit(command_id, self._run, command_id)

    def submit_patterns(self, command_id: str) -> Future:
        """History analysis of a finished command; failures are covered by `submit`."""
        return self._submit(f"{command_id}:patterns", self._run_patterns, command_id)

    def _submit(self, key: str, fn, command_id: str) -> Future:
        with self._lock:
            fut = self._inflight.get(key)
            if fut is not None:
                return fut
            fut = self._pool.submit(fn, key, command_id)
            self._inflight[key] = fut
        fut.add_done_callback(lambda f, cid=command_id: self._report(cid, f))
        self.publish_status()
        return fut

    def analyze(self, command_id: str, timeout: Optional[float] = None) -> AnalysisResult:
        return self.submit(command_id).result(timeout=timeout)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def _run(self, key: str, command_id: str) -> AnalysisResult:
        try:
            result = self.pipeline.run(command_id)
            self.store.save_analysis(result)
            log.info(
                "analyzed %s: %d suggestion(s) via %s",
                command_id, len(result.suggestions), result.provenance.provider,
            )
            return result
        finally:
            self._done(key)

    def _run_patterns(self, key: str, command_id: str) -> Optional[AnalysisResult]:
        try:
            result = self.pipeline.run_patterns(command_id)
            if result is not None:
                self.store.save_analysis(result)
                log.info("history of %s: %d suggestion(s)", command_id, len(result.suggestions))
            return result
        finally:
            self._done(key)

    def _done(self, key: str) -> None:
        with self._lock:
            self._inflight.pop(key, None)
        self.publish_status()

    @staticmethod
    def _report(command_id: str, fut: Future) -> None:
        if fut.cancelled():
            return
        err = fut.exception()
        if err is not None:
            log.error("analysis of %s failed: %s", command_id, err)

    def current_suggestions(self) -> List[AnalysisSuggestion]:
        cutoff = now_ms() - self.recent_window
        recent = [a for a in self.store.latest_analyses(RECENT_ANALYSES) if a.created_at >= cutoff]
        return rank(dedupe([s for a in recent for s in a.suggestions]))

    def publish_status(self) -> None:
        if self.publisher is None:
            return
        try:
            with self._publish_lock:
                self._publish()
        except (ShellSenseError, OSError) as e:
            log.warning("status publish failed: %s", e)

    def _publish(self) -> None:
        # computed and written under the publish lock: the last write is never stale
        suggestions = self.current_suggestions()
        last = self.store.latest_analyses(1)
        if self.in_flight():
            state = "analyzing"
        elif suggestions:
            state = "issues_found"
        else:
            state = "idle"
        self.publisher.publish(state, suggestions, last_command=last[0].command if last else None)

    def shutdown(self, wait: bool = False) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=not wait)
        self.pipeline.close()


# ---- background loop ----

def _read_offset(p: Path) -> int:
    try:
        return int(p.read_text().strip() or 0)
    except (OSError, ValueError):
        return 0


def _rotate(spool: Spool, offset: int, service: AnalysisService) -> int:
    """Move a fully read spool aside; lines appended after the last read are still delivered."""
    rotated = spool.rotate()
    events, _ = rotated.read_from(offset)
    for ev in events:
        service.handle_event(ev)
    log.info("spool rotated to %s", rotated.path)
    return 0


def _sweep(store: EventStore, cfg: AgentConfig) -> None:
    try:
        if cfg.retention_days:
            n = store.clear_events(older_than=now_ms() - cfg.retention_days * DAY_MS)
            if n:
                log.info("retention: dropped %d event(s) older than %d day(s)", n, cfg.retention_days)
        if cfg.max_events:
            n = store.prune(cfg.max_events)
            if n:
                log.info("retention: pruned %d event(s) over the %d cap", n, cfg.max_events)
    except StoreUnavailable as e:
        log.warning("retention sweep skipped: %s", e)


def build_service(cfg: AgentConfig, store: Optional[EventStore] = None, reviewer=None) -> AnalysisService:
    store = store or EventStore(str(cfg.db_path))
    provider = create_provider(cfg.llm, reviewer=reviewer)
    pipeline = AnalysisPipeline(
        store,
        provider=provider,
        provider_timeout=cfg.llm.timeout,
        history_limit=cfg.history_limit,
        repo_search=cfg.repo_search,
        patterns=cfg.analyze_patterns,
    )
    publisher = StatusPublisher(cfg.status_path, cfg.suggestions_path)
    return AnalysisService(
        store,
        pipeline,
        publisher,
        max_workers=cfg.workers,
        analyze_failures=cfg.analyze_failures,
        analyze_patterns=cfg.analyze_patterns,
    )


def run_agent(config: Optional[AgentConfig] = None, once: bool = False,
              stop: Optional[threading.Event] = None) -> int:
    """
    Agent main loop: tail the capture spool, persist every event, analyze
    failures in the background and keep the status files fresh.
    - `once` drains the spool a single time and returns (used by tests/cron).
    - Returns a process exit code (1 when the agent is disabled).
    """
    # Hydrate env from <home>/.env (does not overwrite existing real env)
    load_env()
    cfg = config or load_config()
    if not cfg.enabled:
        log.warning("agent is disabled; run `shellsense agent enable`")
        return 1

    service = build_service(cfg)
    spool = Spool(str(cfg.spool_path))
    offset_path = cfg.home_path / "spool.offset"
    offset = _read_offset(offset_path)
    stop = stop or threading.Event()

    print(
        f"[bold cyan] watching {spool.path} | provider={cfg.llm.type if cfg.llm.enabled else 'heuristic'} "
        f"store={cfg.db_path}"
    )
    service.publish_status()

    last_sweep: Optional[float] = None
    try:
        while not stop.is_set():
            if spool.size() < offset:
                offset = 0  # spool was truncated
            events, new_offset = spool.read_from(offset)
            for ev in events:
                service.handle_event(ev)
            if new_offset != offset:
                offset = new_offset
                offset_path.write_text(str(offset))
            if cfg.spool_rotate_bytes and offset >= cfg.spool_rotate_bytes and offset >= spool.size():
                offset = _rotate(spool, offset, service)
                offset_path.write_text(str(offset))

            if last_sweep is None or time.monotonic() - last_sweep > SWEEP_INTERVAL:
                _sweep(service.store, cfg)
                last_sweep = time.monotonic()

            if once:
                service.shutdown(wait=True)
                return 0
            stop.wait(cfg.poll_interval)
    except KeyboardInterrupt:
        print("\nbye")
    finally:
        service.shutdown(wait=False)
    return 0
