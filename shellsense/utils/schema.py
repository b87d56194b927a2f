from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Literal, Optional

from ..core.events import ChunkGap, now_ms

SuggestionType = Literal["command", "optimization", "shortcut", "warning", "tip"]
Priority = Literal["low", "medium", "high"]
RedactionField = Literal["env", "stdout", "stderr", "command"]

PRIORITY_RANK: Dict[str, int] = {"low": 1, "medium": 2, "high": 3}


class PriorCommand(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: str
    args: List[str] = []
    exit_code: Optional[int] = None
    timestamp: int = 0


class CommandRun(BaseModel):
    """One finished (or still running) command as the pattern analysis sees it."""
    model_config = ConfigDict(frozen=True)

    command_id: str
    command: str
    args: List[str] = []
    cwd: str = ""
    timestamp: int = 0
    exit_code: Optional[int] = None
    duration: Optional[int] = None

    @property
    def failed(self) -> bool:
        return self.exit_code is not None and self.exit_code != 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args]).strip()


class CommandPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: str
    frequency: int = 0
    success_rate: float = 0.0
    avg_duration: float = 0.0
    last_used: int = 0
    common_args: List[str] = []


class AnalysisContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: str
    args: List[str] = []
    cwd: str = ""
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    env: Dict[str, str] = {}
    previous_commands: List[PriorCommand] = []
    timestamp: int = 0


class ErrorSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    command: str
    args: List[str] = []
    exit_code: int
    stderr: str = ""
    stdout: str = ""
    cwd: str = ""
    timestamp: int = 0

    @classmethod
    def from_context(cls, ctx: AnalysisContext) -> "ErrorSummary":
        return cls(
            command=ctx.command,
            args=list(ctx.args),
            exit_code=ctx.exit_code,
            stderr=ctx.stderr,
            stdout=ctx.stdout,
            cwd=ctx.cwd,
            timestamp=ctx.timestamp,
        )

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args]).strip()


class AnalysisSuggestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: str = ""
    actionable_snippet: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    type: SuggestionType = "tip"
    priority: Priority = "medium"
    source: str = "heuristic"
    command: str = ""
    timestamp: int = 0


class Redaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: RedactionField
    pattern: str
    replaced: str
    key: Optional[str] = None


class SanitizedContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    original: AnalysisContext
    sanitized: AnalysisContext
    redactions: List[Redaction] = []


class RepoMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    root: Optional[str] = None
    type: Literal["git", "hg", "svn", "none"] = "none"
    files: List[str] = []
    language: Optional[str] = None
    framework: Optional[str] = None


class MCPToolInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    context_window: AnalysisContext
    error_summary: ErrorSummary
    repo_metadata: RepoMetadata = RepoMetadata()
    previous_suggestions: List[AnalysisSuggestion] = []


class Provenance(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    model: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)
    tokens_used: Optional[int] = None
    cached: bool = False
    fallback_reason: Optional[str] = None


class MCPToolOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    suggestions: List[AnalysisSuggestion] = []
    provenance: Provenance


class AnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    command_id: str = ""
    session_id: str = ""
    command: str = ""
    suggestions: List[AnalysisSuggestion] = []
    provenance: Provenance
    gaps: List[ChunkGap] = []
    errors: List[str] = []
    created_at: int = Field(default_factory=now_ms)

    @property
    def high_priority_count(self) -> int:
        return sum(1 for s in self.suggestions if s.priority == "high")
