# shellsense/agent/pipeline.py
"""
Failure analysis in four layers, cheapest first:

  1. heuristics   pure pattern detectors, each isolated from the others
  2. repo search  only when no heuristic is confident
  3. history      repeated failures and similar commands that worked
  4. provider     optional external reasoning, bounded by a timeout

Any provider failure degrades to the heuristic answer with the reason
recorded in the provenance. The pipeline itself never talks to the network
except through the provider.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.events import (
    COMMAND_START,
    EXIT_STATUS,
    STDERR_CHUNK,
    STDOUT_CHUNK,
    ChunkGap,
    find_gaps,
)
from ..utils.errors import CaptureGap, InvalidEvent, ProviderUnavailable, ShellSenseError
from ..utils.redact import Sanitizer
from ..utils.schema import (
    PRIORITY_RANK,
    AnalysisContext,
    AnalysisResult,
    AnalysisSuggestion,
    ErrorSummary,
    MCPToolInput,
    MCPToolOutput,
    PriorCommand,
    Provenance,
)
from .heuristics import HEURISTICS, Detector
from .patterns import analyze_run
from .repo import find_repo_root, repo_metadata
from .search import local_search

log = logging.getLogger(__name__)

CONFIDENT = 0.8
HEURISTIC_PROVIDER = "heuristic"


def _rank_key(s: AnalysisSuggestion) -> Tuple[int, float, int]:
    return (-PRIORITY_RANK[s.priority], -s.confidence, -s.timestamp)


def rank(suggestions: Sequence[AnalysisSuggestion]) -> List[AnalysisSuggestion]:
    """Priority, then confidence, then newest originating command; ties keep input order."""
    return sorted(suggestions, key=_rank_key)


def dedupe(suggestions: Sequence[AnalysisSuggestion]) -> List[AnalysisSuggestion]:
    """Collapse identical titles, keeping the higher (priority, confidence) entry in the first one's slot."""
    kept: Dict[str, int] = {}
    out: List[AnalysisSuggestion] = []
    for s in suggestions:
        key = s.title.strip().casefold()
        i = kept.get(key)
        if i is None:
            kept[key] = len(out)
            out.append(s)
            continue
        cur = out[i]
        if (PRIORITY_RANK[s.priority], s.confidence) > (PRIORITY_RANK[cur.priority], cur.confidence):
            out[i] = s
    return out


class AnalysisPipeline:
    def __init__(
        self,
        store,
        detectors: Sequence[Tuple[str, Detector]] = HEURISTICS,
        provider=None,
        provider_timeout: float = 30.0,
        history_limit: int = 5,
        repo_search: bool = True,
        sanitizer: Optional[Sanitizer] = None,
        patterns: bool = False,
    ):
        self.store = store
        self.detectors = list(detectors)
        self.provider = provider
        self.provider_timeout = float(provider_timeout)
        self.history_limit = int(history_limit)
        self.repo_search = repo_search
        self.sanitizer = sanitizer or Sanitizer()
        self.patterns = patterns
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="shellsense-provider")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ---------- context ----------
    def _load(self, command_id: str) -> Tuple[AnalysisContext, List[ChunkGap], str]:
        events = self.store.get_events_by_command(command_id)
        start = next((e for e in events if e.type == COMMAND_START), None)
        if start is None:
            raise InvalidEvent(f"no command_start for {command_id}")

        stdout = [e for e in events if e.type == STDOUT_CHUNK]
        stderr = [e for e in events if e.type == STDERR_CHUNK]
        gaps = find_gaps(stdout + stderr)
        for g in gaps:
            log.warning("%s", CaptureGap(g.command_id, g.stream, g.expected, g.got))

        exit_ev = next((e for e in reversed(events) if e.type == EXIT_STATUS), None)
        ctx = AnalysisContext(
            command=start.command,
            args=list(start.args),
            cwd=start.cwd,
            exit_code=exit_ev.exit_code if exit_ev is not None else -1,
            stdout="".join(c.chunk for c in stdout),
            stderr="".join(c.chunk for c in stderr),
            env=dict(start.env),
            previous_commands=self._history(start.session_id, start.id, start.timestamp),
            timestamp=start.timestamp,
        )
        return ctx, gaps, start.session_id

    def _history(self, session_id: str, command_id: str, before: int) -> List[PriorCommand]:
        if self.history_limit <= 0:
            return []
        events = self.store.get_events_by_session(session_id)
        exits = {e.command_id: e.exit_code for e in events if e.type == EXIT_STATUS}
        starts = [
            e for e in events
            if e.type == COMMAND_START and e.id != command_id and e.timestamp <= before
        ][: self.history_limit]
        return [
            PriorCommand(command=e.command, args=list(e.args), exit_code=exits.get(e.id), timestamp=e.timestamp)
            for e in reversed(starts)
        ]

    def build_context(self, command_id: str) -> AnalysisContext:
        ctx, _, _ = self._load(command_id)
        return ctx

    # ---------- layers ----------
    def _heuristics(self, summary: ErrorSummary, errors: List[str]) -> List[AnalysisSuggestion]:
        out: List[AnalysisSuggestion] = []
        for name, detect in self.detectors:
            try:
                out.extend(detect(summary))
            except Exception as e:
                log.warning("heuristic %s failed: %s", name, e)
                errors.append(f"{name}: {e}")
        return out

    def _search(self, summary: ErrorSummary, errors: List[str]) -> List[AnalysisSuggestion]:
        try:
            root = find_repo_root(summary.cwd)
            return local_search(summary, Path(root) if root else None)
        except Exception as e:
            log.warning("local search failed: %s", e)
            errors.append(f"local-search: {e}")
            return []

    def _history_layer(self, command_id: str, errors: List[str]) -> List[AnalysisSuggestion]:
        try:
            return analyze_run(self.store, command_id, self.sanitizer)
        except Exception as e:
            log.warning("history analysis failed: %s", e)
            errors.append(f"patterns: {e}")
            return []

    def _ask_provider(self, tool_input: MCPToolInput) -> MCPToolOutput:
        if not self.provider.is_available():
            raise ProviderUnavailable(f"{self.provider.name} provider is not available")
        return self.provider.analyze(tool_input)

    def _provider(self, context: AnalysisContext, summary: ErrorSummary,
                  previous: List[AnalysisSuggestion]) -> Tuple[List[AnalysisSuggestion], Provenance]:
        if self.provider is None:
            return [], Provenance(provider=HEURISTIC_PROVIDER, fallback_reason="no provider configured")

        tool_input = MCPToolInput(
            context_window=context,
            error_summary=summary,
            repo_metadata=repo_metadata(context.cwd),
            previous_suggestions=previous,
        )
        future = self._executor.submit(self._ask_provider, tool_input)
        try:
            output = future.result(timeout=self.provider_timeout)
        except FutureTimeout:
            future.cancel()
            reason = f"ProviderTimeout: no answer within {self.provider_timeout:g}s"
        except (ShellSenseError, ValueError) as e:
            reason = f"{type(e).__name__}: {e}"
        except Exception as e:
            log.warning("provider %s raised unexpectedly", self.provider.name, exc_info=True)
            reason = f"ProviderError: {type(e).__name__}: {e}"
        else:
            return list(output.suggestions), output.provenance

        log.info("provider %s skipped: %s", self.provider.name, reason)
        return [], Provenance(provider=HEURISTIC_PROVIDER, fallback_reason=reason)

    # ---------- entry points ----------
    def analyze(self, context: AnalysisContext, command_id: str = "", session_id: str = "",
                gaps: Sequence[ChunkGap] = ()) -> AnalysisResult:
        # only the sanitized view is used from here on
        context = self.sanitizer.sanitize_context(context).sanitized
        summary = ErrorSummary.from_context(context)
        errors: List[str] = []

        suggestions = self._heuristics(summary, errors)
        if self.repo_search and not any(s.confidence >= CONFIDENT for s in suggestions):
            suggestions.extend(self._search(summary, errors))
        if self.patterns and command_id:
            suggestions.extend(self._history_layer(command_id, errors))

        extra, provenance = self._provider(context, summary, suggestions)
        suggestions.extend(extra)

        return AnalysisResult(
            command_id=command_id,
            session_id=session_id,
            command=summary.command_line,
            suggestions=rank(dedupe(suggestions)),
            provenance=provenance,
            gaps=list(gaps),
            errors=errors,
        )

    def run(self, command_id: str) -> AnalysisResult:
        ctx, gaps, session_id = self._load(command_id)
        return self.analyze(ctx, command_id=command_id, session_id=session_id, gaps=gaps)

    def run_patterns(self, command_id: str) -> Optional[AnalysisResult]:
        """History suggestions for a command that did not fail; None when there is nothing to say."""
        run = self.store.command_run(command_id)
        if run is None or run.failed:
            return None
        errors: List[str] = []
        suggestions = self._history_layer(command_id, errors)
        if not suggestions:
            return None
        start = next((e for e in self.store.get_events_by_command(command_id) if e.type == COMMAND_START), None)
        return AnalysisResult(
            command_id=command_id,
            session_id=start.session_id if start is not None else "",
            command=self.sanitizer.redact_text(run.command_line, "command")[0],
            suggestions=rank(dedupe(suggestions)),
            provenance=Provenance(provider="patterns"),
            errors=errors,
        )
