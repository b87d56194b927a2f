import logging
import re
from typing import Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from .errors import SanitizationFailure
from .schema import AnalysisContext, Redaction, SanitizedContext

log = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
PLACEHOLDER_PREFIX = "[REDACTED"
KEEP_CHARS = 4
REVIEW_PREVIEW = 500
REVIEW_MAX_REDACTIONS = 10
TRUNCATED = "...(truncated)"

# Env var names containing any of these (case-insensitive) are blanked outright.
SECRET_VOCAB = ("password", "passwd", "secret", "token", "key", "credential", "api_key", "auth")

# Never start a match on an already-placed placeholder.
_NOT_PLACED = r"(?!\[REDACTED)"
_PLACED = re.compile(r"\[REDACTED(?::[^\]]*)?\]")

# Ordered: most specific shapes first so the generic ones see placeholders.
_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    ("private_key", re.compile(
        r"-----BEGIN\s+(?:[A-Z]+\s+)?PRIVATE\s+KEY-----[\s\S]*?-----END\s+(?:[A-Z]+\s+)?PRIVATE\s+KEY-----"
    )),
    ("jwt", re.compile(r"\beyJ[A-Za-z0-9_-]{4,}\.[A-Za-z0-9_-]{4,}\.[A-Za-z0-9_-]{4,}")),
    ("github_token", re.compile(r"\b(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{20,}\b|\bgithub_pat_[A-Za-z0-9_]{20,}\b")),
    ("api_key_prefix", re.compile(r"\b(?:sk|pk|rk)[-_](?:live_|test_|proj-)?[A-Za-z0-9_-]{20,}")),
    ("google_api_key", re.compile(r"\bAIza[0-9A-Za-z_-]{35}\b")),
    ("aws_access_key", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    ("slack_token", re.compile(r"\bxox[abprs]-[A-Za-z0-9-]{10,}")),
    ("secret_assignment", re.compile(
        r"(?i)\b([\w.-]*(?:password|passwd|pwd|secret|token|api[_-]?key|apikey|key|credential|auth)[\w.-]*)"
        r"(\s*[:=]\s*)([\"']?)" + _NOT_PLACED + r"([^\s\"',;]{4,})"
    )),
    # mixed case required; a run starting with "/" is an absolute path
    ("base64_blob", re.compile(
        r"(?<![A-Za-z0-9/+=])(?!/)(?=[A-Za-z0-9/+]*[A-Z])(?=[A-Za-z0-9/+]*[a-z])"
        r"[A-Za-z0-9/+]{40,}={0,2}(?![A-Za-z0-9/+=])"
    )),
    ("long_token", re.compile(r"\b[A-Za-z0-9]{32,}\b")),
]


def is_secret_key(name: str) -> bool:
    low = name.lower()
    return any(word in low for word in SECRET_VOCAB)


def placeholder(secret: str) -> str:
    """Non-reversible stand-in: only the first few characters survive."""
    return f"[REDACTED:{secret[:KEEP_CHARS]}...]"


class Sanitizer:
    """
    Regex-driven secret scrubber for anything that may leave the machine.

    `extra_patterns` are user-supplied regex strings appended after the
    built-in detectors. A broken one makes the field it was scanning fall back
    to a full redaction rather than passing through.
    """

    def __init__(self, extra_patterns: Sequence[str] = ()):
        self.extra_patterns = tuple(extra_patterns)

    # ---------- detectors ----------
    def _detectors(self) -> Iterable[Tuple[str, Pattern[str]]]:
        yield from _PATTERNS
        for i, raw in enumerate(self.extra_patterns):
            try:
                yield f"custom_{i}", re.compile(_NOT_PLACED + "(?:" + raw + ")")
            except re.error as e:
                raise SanitizationFailure("pattern", f"custom pattern {raw!r}: {e}") from e

    def _scan(self, text: str, field: str) -> Tuple[str, List[Redaction]]:
        redactions: List[Redaction] = []

        for name, pat in self._detectors():
            placed = [(p.start(), p.end()) for p in _PLACED.finditer(text)]

            def _sub(m: "re.Match[str]", name: str = name, placed: list = placed) -> str:
                if any(a <= m.start() < b for a, b in placed):
                    return m.group(0)
                if name == "secret_assignment":
                    value = m.group(4)
                    rep = placeholder(value)
                    redactions.append(Redaction(type=field, pattern=name, replaced=rep))
                    return f"{m.group(1)}{m.group(2)}{m.group(3)}{rep}"
                secret = m.group(0)
                if not secret or secret.startswith(PLACEHOLDER_PREFIX):
                    return secret
                rep = placeholder(secret)
                redactions.append(Redaction(type=field, pattern=name, replaced=rep))
                return rep

            text = pat.sub(_sub, text)
        return text, redactions

    # ---------- public API ----------
    def redact_text(self, text: str, field: str = "stdout") -> Tuple[str, List[Redaction]]:
        """Scrub one string; a detector failure blanks the whole string."""
        if not text:
            return text, []
        try:
            return self._scan(text, field)
        except (SanitizationFailure, re.error, RecursionError) as e:
            log.warning("sanitizer fell back to full redaction of %s: %s", field, e)
            return REDACTED, [Redaction(type=field, pattern="sanitization_failure", replaced=REDACTED)]

    def sanitize_env(self, env: Dict[str, str]) -> Tuple[Dict[str, str], List[Redaction]]:
        out: Dict[str, str] = {}
        redactions: List[Redaction] = []
        for k, v in env.items():
            if is_secret_key(k):
                out[k] = REDACTED
                if v != REDACTED:
                    redactions.append(Redaction(type="env", pattern="secret_name", replaced=REDACTED, key=k))
                continue
            clean, found = self.redact_text(v, "env")
            out[k] = clean
            redactions.extend(r.model_copy(update={"key": k}) for r in found)
        return out, redactions

    def sanitize_context(self, ctx: AnalysisContext) -> SanitizedContext:
        redactions: List[Redaction] = []

        env, found = self.sanitize_env(ctx.env)
        redactions.extend(found)

        args: List[str] = []
        for a in ctx.args:
            clean, found = self.redact_text(a, "command")
            args.append(clean)
            redactions.extend(found)

        stdout, found = self.redact_text(ctx.stdout, "stdout")
        redactions.extend(found)
        stderr, found = self.redact_text(ctx.stderr, "stderr")
        redactions.extend(found)

        sanitized = ctx.model_copy(update={"env": env, "args": args, "stdout": stdout, "stderr": stderr})
        return SanitizedContext(original=ctx, sanitized=sanitized, redactions=redactions)


_default = Sanitizer()


def sanitize_context(ctx: AnalysisContext, sanitizer: Optional[Sanitizer] = None) -> SanitizedContext:
    return (sanitizer or _default).sanitize_context(ctx)


def _tail(text: str, budget: int) -> str:
    if len(text) <= budget:
        return text
    if budget <= len(TRUNCATED):
        return TRUNCATED[:budget]
    return TRUNCATED + text[len(text) - (budget - len(TRUNCATED)):]


def truncate_context(ctx: AnalysisContext, max_length: int) -> AnalysisContext:
    """
    Cap stdout + stderr at `max_length` characters. stderr gets first claim on
    the budget; both keep their tails since that's where errors usually land.
    """
    out, err = ctx.stdout, ctx.stderr
    if max_length <= 0 or len(out) + len(err) <= max_length:
        return ctx
    out_budget = min(len(out), max_length // 3)
    err_budget = min(len(err), max_length - out_budget)
    out_budget = max_length - err_budget
    return ctx.model_copy(update={"stdout": _tail(out, out_budget), "stderr": _tail(err, err_budget)})


def _preview(label: str, text: str, limit: int) -> List[str]:
    lines = [f"{label} ({len(text)} chars):", text[:limit]]
    if len(text) > limit:
        lines.append("... (truncated)")
    lines.append("")
    return lines


def format_context_for_review(sc: SanitizedContext, preview: int = REVIEW_PREVIEW) -> str:
    """Human-readable view of exactly what would be sent. Reads only the sanitized side."""
    s = sc.sanitized
    lines: List[str] = ["=== Context to be sent to provider ===", ""]
    lines.append(f"Command: {' '.join([s.command, *s.args]).strip()}")
    lines.append(f"CWD: {s.cwd}")
    lines.append(f"Exit Code: {s.exit_code}")
    lines.append("")

    if s.stderr:
        lines.extend(_preview("Stderr", s.stderr, preview))
    if s.stdout:
        lines.extend(_preview("Stdout", s.stdout, preview))

    lines.append(f"=== Redactions Applied ({len(sc.redactions)}) ===")
    for r in sc.redactions[:REVIEW_MAX_REDACTIONS]:
        where = f"{r.type}:{r.key}" if r.key else r.type
        lines.append(f"  [{where}] {r.pattern} -> {r.replaced}")
    if len(sc.redactions) > REVIEW_MAX_REDACTIONS:
        lines.append(f"  ... and {len(sc.redactions) - REVIEW_MAX_REDACTIONS} more")
    return "\n".join(lines)
