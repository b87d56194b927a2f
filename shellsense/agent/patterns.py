# shellsense/agent/patterns.py
"""
Command-history analysis.

Where the heuristics read one failure's output, these look across the
recorded history: repeated failures, slow commands, arguments a command is
usually given, and overall success. Everything is derived from the store on
demand; nothing is kept between calls.
"""
from __future__ import annotations

from collections import Counter, OrderedDict
from typing import List, Optional, Sequence

from ..utils.redact import Sanitizer
from ..utils.schema import AnalysisSuggestion, CommandPattern, CommandRun

SLOW_COMMAND_MS = 5000
SLOW_PATTERN_MS = 3000
REPEATED_FAILURES = 3
REPEAT_WINDOW = 5
FREQUENT = 5
SIMILAR_WINDOW = 20
LOW_SUCCESS_RATE = 0.7
MIN_SAMPLE = 5
TOP_FREQUENT = 5
TOP_SLOW = 3
COMMON_ARGS = 10
PATTERN_WINDOW = 500

SOURCE = "patterns"


def command_patterns(runs: Sequence[CommandRun]) -> List[CommandPattern]:
    """Aggregate runs (newest first) per executable, in order of most recent use."""
    grouped: "OrderedDict[str, List[CommandRun]]" = OrderedDict()
    for r in runs:
        if r.command:
            grouped.setdefault(r.command, []).append(r)

    out: List[CommandPattern] = []
    for command, rs in grouped.items():
        finished = [r for r in rs if r.exit_code is not None]
        timed = [r.duration for r in rs if r.duration is not None]
        args = Counter(" ".join(r.args) for r in rs if r.args)
        out.append(
            CommandPattern(
                command=command,
                frequency=len(rs),
                success_rate=sum(1 for r in finished if r.succeeded) / len(finished) if finished else 0.0,
                avg_duration=sum(timed) / len(timed) if timed else 0.0,
                last_used=max(r.timestamp for r in rs),
                common_args=[a for a, _ in args.most_common(COMMON_ARGS)],
            )
        )
    return out


def _suggest(title: str, description: str, confidence: float, kind: str, priority: str,
             command: str, timestamp: int, snippet: Optional[str] = None) -> AnalysisSuggestion:
    return AnalysisSuggestion(
        title=title,
        description=description,
        actionable_snippet=snippet,
        confidence=confidence,
        type=kind,
        priority=priority,
        source=SOURCE,
        command=command,
        timestamp=timestamp,
    )


def _seconds(ms: float) -> str:
    return f"{ms / 1000:.1f}s"


# ---- one command ----

def analyze_run(store, command_id: str, sanitizer: Optional[Sanitizer] = None) -> List[AnalysisSuggestion]:
    """History-based suggestions for a single recorded command."""
    run = store.command_run(command_id)
    if run is None or not run.command:
        return []
    sanitizer = sanitizer or Sanitizer()

    def clean(text: str) -> str:
        return sanitizer.redact_text(text, "command")[0]

    line = clean(run.command_line)
    out: List[AnalysisSuggestion] = []

    if run.failed:
        window = store.command_runs(command=run.command, upto=run.command_id, limit=REPEAT_WINDOW)
        failures = sum(1 for r in window if r.failed)
        if failures >= REPEATED_FAILURES:
            out.append(_suggest(
                "Repeated Command Failures",
                f'"{run.command}" has failed {failures} of its last {len(window)} runs. '
                "Check the command syntax or the environment it runs in.",
                0.8, "warning", "high", line, run.timestamp,
            ))

    if run.duration is not None and run.duration > SLOW_COMMAND_MS:
        out.append(_suggest(
            "Slow Command Execution",
            f'"{run.command}" took {_seconds(run.duration)}. '
            "Consider caching its work or a faster alternative.",
            0.6, "optimization", "medium", line, run.timestamp,
        ))

    history = store.command_runs(command=run.command, limit=PATTERN_WINDOW)
    pattern = next(iter(command_patterns(history)), None)
    if pattern is not None and pattern.frequency > FREQUENT and pattern.common_args and not run.args:
        usual = clean(f"{run.command} {pattern.common_args[0]}")
        out.append(_suggest(
            "Common Arguments",
            f'"{run.command}" is usually run with arguments. Consider an alias for the usual ones.',
            0.4, "tip", "low", line, run.timestamp,
            snippet=usual,
        ))

    if run.failed:
        recent = store.command_runs(upto=run.command_id, limit=SIMILAR_WINDOW)
        ok = next(
            (r for r in recent
             if r.command_id != run.command_id and r.command == run.command
             and r.succeeded and len(r.args) == len(run.args)),
            None,
        )
        if ok is not None:
            out.append(_suggest(
                "Similar Successful Command",
                "A similar command succeeded recently. Compare the differences.",
                0.6, "command", "medium", line, run.timestamp,
                snippet=clean(ok.command_line),
            ))
    return out


# ---- whole history ----

def analyze_patterns(store, limit: int = PATTERN_WINDOW,
                     sanitizer: Optional[Sanitizer] = None) -> List[AnalysisSuggestion]:
    """Suggestions drawn from the newest `limit` commands as a whole."""
    runs = store.command_runs(limit=limit)
    patterns = command_patterns(runs)
    sanitizer = sanitizer or Sanitizer()
    out: List[AnalysisSuggestion] = []

    frequent = sorted((p for p in patterns if p.frequency >= FREQUENT), key=lambda p: -p.frequency)
    for p in frequent[:TOP_FREQUENT]:
        cmd = sanitizer.redact_text(p.command, "command")[0]
        out.append(_suggest(
            f"Frequently Used Command: {cmd}",
            f'"{cmd}" has been used {p.frequency} times. Consider an alias or a script.',
            0.4, "shortcut", "low", cmd, p.last_used,
        ))

    slow = sorted((p for p in patterns if p.avg_duration > SLOW_PATTERN_MS), key=lambda p: -p.avg_duration)
    for p in slow[:TOP_SLOW]:
        cmd = sanitizer.redact_text(p.command, "command")[0]
        out.append(_suggest(
            f"Slow Command Pattern: {cmd}",
            f'"{cmd}" averages {_seconds(p.avg_duration)} per run. Consider optimizing it.',
            0.5, "optimization", "medium", cmd, p.last_used,
        ))

    finished = [r for r in runs if r.exit_code is not None]
    if len(finished) >= MIN_SAMPLE:
        rate = sum(1 for r in finished if r.succeeded) / len(finished)
        if rate < LOW_SUCCESS_RATE:
            out.append(_suggest(
                "Low Success Rate",
                f"Only {rate * 100:.1f}% of the last {len(finished)} commands succeeded. "
                "Review the failures for a common cause.",
                0.5, "tip", "medium", "", max(r.timestamp for r in finished),
            ))
    return out
