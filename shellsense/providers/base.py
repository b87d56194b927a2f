# shellsense/providers/base.py
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..agent.cache import ResponseCache, fingerprint
from ..core.events import now_ms
from ..utils.config import SafetyConfig
from ..utils.errors import ProviderUnavailable
from ..utils.redact import Sanitizer, format_context_for_review, truncate_context
from ..utils.schema import (
    PRIORITY_RANK,
    AnalysisContext,
    AnalysisSuggestion,
    ErrorSummary,
    MCPToolInput,
    MCPToolOutput,
    Provenance,
    SanitizedContext,
)

log = logging.getLogger(__name__)

# Receives the review text; True means "go ahead and send it".
Reviewer = Callable[[str], bool]

SUGGESTION_TYPES = ("command", "optimization", "shortcut", "warning", "tip")


# ---- Parsing helpers -------------------------------------------------------

def extract_json(s: str) -> Optional[dict]:
    """
    Try to extract a JSON object from an LLM response (which may include prose).
    We take the largest {...} block and parse it.
    """
    if not s:
        return None
    first = s.find("{")
    last = s.rfind("}")
    if first == -1 or last == -1 or last <= first:
        return None
    try:
        obj = json.loads(s[first : last + 1])
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def _confidence(v: Any) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return 0.5
    if f != f:  # NaN
        return 0.5
    return min(1.0, max(0.0, f))


def shape_output(obj: Any, provider: str, model: Optional[str], command: str = "",
                 tokens_used: Optional[int] = None) -> MCPToolOutput:
    """
    Normalize a model's JSON into MCPToolOutput.
    Expected: {"suggestions": [{title, description, actionable_snippet, confidence, type, priority}]}
    Items without a title are dropped; unknown type/priority fall back to tip/medium.
    """
    items = []
    if isinstance(obj, dict):
        items = obj.get("suggestions") or obj.get("fixes") or []
    if not isinstance(items, list):
        items = []

    ts = now_ms()
    out: List[AnalysisSuggestion] = []
    for it in items:
        if not isinstance(it, dict):
            continue
        title = str(it.get("title") or "").strip()
        if not title:
            continue
        kind = str(it.get("type") or "tip").lower()
        prio = str(it.get("priority") or "medium").lower()
        snippet = it.get("actionable_snippet") or it.get("actionableSnippet") or it.get("command")
        out.append(
            AnalysisSuggestion(
                title=title,
                description=str(it.get("description") or "").strip(),
                actionable_snippet=str(snippet).strip() if snippet else None,
                confidence=_confidence(it.get("confidence", 0.5)),
                type=kind if kind in SUGGESTION_TYPES else "tip",
                priority=prio if prio in PRIORITY_RANK else "medium",
                source=provider,
                command=command,
                timestamp=ts,
            )
        )
    return MCPToolOutput(
        suggestions=out,
        provenance=Provenance(provider=provider, model=model, timestamp=ts, tokens_used=tokens_used),
    )


def restamp(output: MCPToolOutput, origin: int) -> MCPToolOutput:
    """Suggestions carry the originating command's time; provenance keeps the response time."""
    if all(s.timestamp == origin for s in output.suggestions):
        return output
    return output.model_copy(
        update={"suggestions": [s.model_copy(update={"timestamp": origin}) for s in output.suggestions]}
    )


# ---- Provider base ---------------------------------------------------------

class BaseProvider(ABC):
    """
    Shared safety envelope for every backend. `analyze` always goes:
    sanitize -> truncate -> cache lookup -> review gate -> _call -> cache store.
    Subclasses only implement `is_available` and `_call`, and only ever see
    the sanitized, truncated input.
    """

    name: str = "base"

    def __init__(
        self,
        settings: Optional[Dict[str, Any]] = None,
        safety: Optional[SafetyConfig] = None,
        cache: Optional[ResponseCache] = None,
        reviewer: Optional[Reviewer] = None,
        timeout: float = 30.0,
    ):
        self.settings = dict(settings or {})
        self.safety = safety or SafetyConfig()
        self.sanitizer = Sanitizer(self.safety.extra_patterns)
        self.cache = cache
        self.reviewer = reviewer
        self.timeout = float(timeout)
        self.model: Optional[str] = None

    @property
    def require_review(self) -> bool:
        return self.safety.require_review

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def _call(self, tool_input: MCPToolInput) -> MCPToolOutput:
        ...

    def sanitize_context(self, ctx: AnalysisContext) -> SanitizedContext:
        return self.sanitizer.sanitize_context(ctx)

    def _sanitize_suggestion(self, s: AnalysisSuggestion) -> AnalysisSuggestion:
        title, _ = self.sanitizer.redact_text(s.title, "stdout")
        desc, _ = self.sanitizer.redact_text(s.description, "stdout")
        snippet = s.actionable_snippet
        if snippet:
            snippet, _ = self.sanitizer.redact_text(snippet, "command")
        return s.model_copy(update={"title": title, "description": desc, "actionable_snippet": snippet})

    def _review(self, sc: SanitizedContext) -> None:
        if not self.require_review:
            return
        if self.reviewer is None:
            raise ProviderUnavailable("review declined: no reviewer to approve outbound context")
        if not self.reviewer(format_context_for_review(sc)):
            raise ProviderUnavailable("review declined")

    def analyze(self, tool_input: MCPToolInput) -> MCPToolOutput:
        sc = self.sanitize_context(tool_input.context_window)
        ctx = truncate_context(sc.sanitized, self.safety.max_context_length)
        sc = sc.model_copy(update={"sanitized": ctx})
        safe_input = tool_input.model_copy(
            update={
                "context_window": ctx,
                "error_summary": ErrorSummary.from_context(ctx),
                "previous_suggestions": [self._sanitize_suggestion(s) for s in tool_input.previous_suggestions],
            }
        )

        def compute() -> MCPToolOutput:
            self._review(sc)
            log.debug("calling %s provider for %r (%d redactions)", self.name, ctx.command, len(sc.redactions))
            return self._call(safe_input)

        if self.cache is None:
            return restamp(compute(), ctx.timestamp)
        output, hit = self.cache.get_or_compute(fingerprint(ctx), compute)
        if hit:
            log.debug("%s provider cache hit for %r", self.name, ctx.command)
        return restamp(output, ctx.timestamp)
