# shellsense/status.py
"""
The two small JSON files that prompt/status-line integrations poll.

Both are replaced atomically (temp file + fsync + rename), so a reader sees
either the previous document or the new one, never a torn write.
"""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .core.events import now_ms
from .utils.schema import PRIORITY_RANK, AnalysisSuggestion

log = logging.getLogger(__name__)

AgentState = Literal["idle", "analyzing", "issues_found"]

STATUS_SYMBOL = {"idle": "●", "analyzing": "⟳", "issues_found": "⚠"}
PRIORITY_MARK = {"low": "·", "medium": "!", "high": "!!"}
MAX_PUBLISHED = 100


class StatusData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: AgentState = "idle"
    suggestion_count: int = Field(default=0, alias="suggestionCount")
    high_priority_count: int = Field(default=0, alias="highPriorityCount")
    last_updated: int = Field(default_factory=now_ms, alias="lastUpdated")
    last_command: Optional[str] = Field(default=None, alias="lastCommand")


class PublishedSuggestion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    description: str = ""
    priority: Literal["low", "medium", "high"] = "medium"
    type: str = "tip"
    confidence: float = 0.0
    actionable_snippet: Optional[str] = Field(default=None, alias="actionableSnippet")
    command: str = ""
    timestamp: int = 0

    @classmethod
    def from_suggestion(cls, s: AnalysisSuggestion) -> "PublishedSuggestion":
        return cls(
            title=s.title,
            description=s.description,
            priority=s.priority,
            type=s.type,
            confidence=s.confidence,
            actionable_snippet=s.actionable_snippet,
            command=s.command,
            timestamp=s.timestamp,
        )


class SuggestionsDoc(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    suggestions: List[PublishedSuggestion] = []
    last_updated: int = Field(default_factory=now_ms, alias="lastUpdated")


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def sort_for_display(items: Iterable[PublishedSuggestion]) -> List[PublishedSuggestion]:
    """Priority first, then newest first. Consumers should not trust file order."""
    return sorted(items, key=lambda s: (-PRIORITY_RANK.get(s.priority, 0), -s.timestamp))


class StatusPublisher:
    def __init__(self, status_path, suggestions_path):
        self.status_path = Path(status_path)
        self.suggestions_path = Path(suggestions_path)

    def publish(self, state: AgentState, suggestions: Sequence[AnalysisSuggestion],
                last_command: Optional[str] = None) -> StatusData:
        ts = now_ms()
        items = [PublishedSuggestion.from_suggestion(s) for s in suggestions][:MAX_PUBLISHED]
        status = StatusData(
            status=state,
            suggestion_count=len(items),
            high_priority_count=sum(1 for s in items if s.priority == "high"),
            last_updated=ts,
            last_command=last_command,
        )
        doc = SuggestionsDoc(suggestions=items, last_updated=ts)
        # suggestions first: a reader that sees the new status finds matching suggestions
        _atomic_write(self.suggestions_path, doc.model_dump_json(by_alias=True, indent=2))
        _atomic_write(self.status_path, status.model_dump_json(by_alias=True, exclude_none=True, indent=2))
        return status

    def publish_idle(self) -> StatusData:
        return self.publish("idle", [])


def read_status(path) -> StatusData:
    try:
        return StatusData.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValidationError, ValueError) as e:
        log.debug("status unreadable at %s: %s", path, e)
        return StatusData()


def read_suggestions(path) -> List[PublishedSuggestion]:
    try:
        return SuggestionsDoc.model_validate_json(Path(path).read_text(encoding="utf-8")).suggestions
    except (OSError, ValidationError, ValueError) as e:
        log.debug("suggestions unreadable at %s: %s", path, e)
        return []


def format_status(status: StatusData) -> str:
    if status.status == "issues_found":
        n = status.high_priority_count or status.suggestion_count
        text = f"{n} issue{'' if n == 1 else 's'}"
    else:
        text = status.status
    return f"{STATUS_SYMBOL[status.status]} {text}"


def format_suggestion(s: PublishedSuggestion) -> str:
    out = f"[{s.priority}] {PRIORITY_MARK.get(s.priority, '')} {s.title}\n"
    if s.description:
        out += f"   {s.description}\n"
    if s.actionable_snippet:
        out += "".join(f"   > {line}\n" for line in s.actionable_snippet.splitlines())
    if s.command:
        out += f"   Command: {s.command}\n"
    return out
