# shellsense/agent/heuristics.py
"""
Fast, offline failure classifiers.

Each detector is a pure function ErrorSummary -> list of suggestions. They
look only at the command line and its captured output; nothing here touches
the filesystem or the network.
"""
from __future__ import annotations

import os
import re
from typing import Callable, List, Optional, Tuple

from ..utils.schema import AnalysisSuggestion, ErrorSummary

Detector = Callable[[ErrorSummary], List[AnalysisSuggestion]]

MISSING_PATH = [
    re.compile(r"No such file or directory:?\s*['\"‘]([^'\"’\n]+)['\"’]"),
    re.compile(r"['\"‘]?([^\s:'\"‘’]+)['\"’]?:\s*No such file or directory"),
    re.compile(r"ENOENT[^'\"\n]*['\"]([^'\"\n]+)['\"]"),
    re.compile(r"cannot (?:access|open|stat) ['\"‘]([^'\"’\n]+)['\"’]"),
]
_NOT_FOUND_CMD = [
    re.compile(r"command not found:\s*(\S+)"),
    re.compile(r"(?:^|\n)(?:[\w./-]+:\s+)?(?:line \d+:\s+)?([^\s:]+):\s*command not found"),
    re.compile(r"['\"]?([^\s'\"]+)['\"]? is not recognized as an internal or external command"),
    re.compile(r"Command ['`]([^'`]+)['`] not found"),
]
_PERMISSION_PATH = re.compile(r"['\"‘]?([^\s:'\"‘’]+)['\"’]?:\s*Permission denied")
TOKEN_NAME = re.compile(r"\b([A-Z][A-Z0-9_]*TOKEN)\b")
_FILE_LINE = [
    re.compile(r"File \"([^\"]+)\", line (\d+)"),
    re.compile(r"([^\s:\"'()]+\.[A-Za-z0-9]+):(\d+)(?::\d+)?"),
    re.compile(r"([^\s:\"'()]+):\s*line (\d+)"),
    re.compile(r"at ([^\s:\"'()]+), line (\d+)"),
]
NIX_ATTR = re.compile(r"attribute ['\"‘]([^'\"’]+)['\"’]", re.I)
_NIX_ERROR = re.compile(r"error:\s*(.+?)(?:\n|$)", re.I)
_PORT = [
    re.compile(r"port\s+(\d{2,5})", re.I),
    re.compile(r"(?:0\.0\.0\.0|127\.0\.0\.1|localhost|::|\[::\])?:(\d{2,5})\b"),
]
_PY_MODULE = re.compile(r"No module named ['\"]?([\w.]+)['\"]?")


def _combined(s: ErrorSummary) -> str:
    return f"{s.stderr}\n{s.stdout}"


def first_match(patterns, text: str) -> Optional[re.Match]:
    for p in patterns:
        m = p.search(text)
        if m:
            return m
    return None


def _suggest(s: ErrorSummary, title: str, description: str, snippet: Optional[str],
             confidence: float, priority: str = "high", kind: str = "warning") -> AnalysisSuggestion:
    return AnalysisSuggestion(
        title=title,
        description=description,
        actionable_snippet=snippet,
        confidence=confidence,
        type=kind,
        priority=priority,
        source="heuristic",
        command=s.command_line,
        timestamp=s.timestamp,
    )


# ---- filesystem ----

def missing_file(s: ErrorSummary) -> List[AnalysisSuggestion]:
    text = _combined(s)
    if "No such file or directory" not in text and "ENOENT" not in text and "cannot find the path" not in text:
        return []
    m = first_match(MISSING_PATH, text)
    path = m.group(1).strip() if m else ""
    if path == s.command and not s.command.startswith((".", "/")):
        # "foo: No such file or directory" about the program itself is a PATH problem
        return []
    if path:
        parent = os.path.dirname(path) or "."
        name = os.path.basename(path.rstrip("/")) or path
        snippet = f"ls -la {parent}\nfind . -name '{name}' -not -path '*/.git/*' | head"
        desc = f"`{s.command_line}` failed because '{path}' does not exist (relative to {s.cwd or 'the current directory'})."
    else:
        snippet = "ls -la"
        desc = f"`{s.command_line}` referenced a file or directory that does not exist."
    return [_suggest(s, "File or Directory Not Found", desc, snippet, 0.85, "high")]


def permission_denied(s: ErrorSummary) -> List[AnalysisSuggestion]:
    text = _combined(s)
    low = text.lower()
    if "permission denied" not in low and "eacces" not in low and "operation not permitted" not in low:
        return []
    if "publickey" in low or s.command == "git":
        return []  # git_auth handles these
    m = _PERMISSION_PATH.search(text)
    path = m.group(1) if m else ""
    if path and (path.startswith("./") or path == s.command):
        snippet = f"ls -l {path}\nchmod +x {path}"
    elif path:
        snippet = f"ls -l {path}\n# if it should be yours:\nsudo chown $USER {path}"
    else:
        snippet = f"ls -l\n# re-run with elevated rights only if appropriate:\nsudo {s.command_line}"
    desc = f"Permission denied{f' on {path}' if path else ''}. Check ownership and mode bits."
    return [_suggest(s, "Permission Denied", desc, snippet, 0.8, "high")]


# ---- PATH ----

def command_not_found(s: ErrorSummary) -> List[AnalysisSuggestion]:
    text = _combined(s)
    low = text.lower()
    if "command not found" not in low and "is not recognized" not in low and s.exit_code != 127:
        return []
    m = first_match(_NOT_FOUND_CMD, text)
    cmd = m.group(1) if m else (s.command if s.exit_code == 127 else "")
    if not cmd:
        return []
    snippet = f"which {cmd}\necho $PATH\n\n# For Nix users:\nnix-shell -p {cmd}"
    return [_suggest(s, "Command Not Found", f"The command \"{cmd}\" is not found in your PATH.", snippet, 0.9, "medium")]


# ---- git / forges ----

def git_auth(s: ErrorSummary) -> List[AnalysisSuggestion]:
    low = _combined(s).lower()
    hit = (
        "authentication failed" in low
        or "permission denied (publickey" in low
        or "could not read username" in low
        or "could not read from remote repository" in low
        or (s.command == "git" and ("403" in low or "permission denied" in low))
    )
    if not hit:
        return []
    snippet = (
        "# Check git credentials:\n"
        "git config --list | grep credential\n"
        "ssh -T git@github.com\n\n"
        "# For GitHub:\n"
        "gh auth login"
    )
    return [_suggest(s, "Git Authentication Error", "Git authentication failed. Check your credentials, SSH key or token.", snippet, 0.9)]


def rate_limit(s: ErrorSummary) -> List[AnalysisSuggestion]:
    low = _combined(s).lower()
    if "rate limit" not in low and "too many requests" not in low:
        return []
    snippet = "# Authenticate to raise the limit:\ngh auth login\n# or\nexport GITHUB_TOKEN=<your token>"
    return [_suggest(s, "API Rate Limit Exceeded", "The remote API rate limit was exceeded. Wait before retrying or authenticate.", snippet, 0.95)]


def missing_token(s: ErrorSummary) -> List[AnalysisSuggestion]:
    text = _combined(s)
    low = text.lower()
    if "token" not in low or not any(w in low for w in ("not set", "missing", "required", "unset", "empty")):
        return []
    m = TOKEN_NAME.search(text)
    name = m.group(1) if m else "TOKEN"
    snippet = f"echo ${{{name}:+set}}\nexport {name}=<your token>\n# persist it:\necho 'export {name}=<your token>' >> ~/.bashrc  # or ~/.zshrc"
    return [_suggest(s, "Token Environment Variable Missing", f"The {name} environment variable is not set or is invalid.", snippet, 0.85)]


# ---- source errors ----

def syntax_error(s: ErrorSummary) -> List[AnalysisSuggestion]:
    text = _combined(s)
    low = text.lower()
    if "syntax error" not in low and "parse error" not in low and "syntaxerror" not in low:
        return []
    m = first_match(_FILE_LINE, text)
    if m:
        where = f"{m.group(1)} at line {m.group(2)}"
        snippet = f"sed -n '{max(1, int(m.group(2)) - 3)},{int(m.group(2)) + 3}p' {m.group(1)}"
    else:
        where = "the input"
        snippet = None
    desc = f"Syntax error in {where}. Look for unbalanced brackets, quotes or a missing separator."
    return [_suggest(s, "Syntax Error Detected", desc, snippet, 0.8)]


def python_missing_module(s: ErrorSummary) -> List[AnalysisSuggestion]:
    m = _PY_MODULE.search(_combined(s))
    if not m:
        return []
    module = m.group(1)
    top = module.split(".", 1)[0]
    snippet = f"python -m pip install {top}\n# inside a project venv:\nsource .venv/bin/activate"
    return [_suggest(s, f"Python Module Missing: {top}", f"Python could not import \"{module}\". Install it into the active environment.", snippet, 0.9)]


# ---- nix ----

def nix_missing_attribute(s: ErrorSummary) -> List[AnalysisSuggestion]:
    low = s.stderr.lower()
    if "attribute" not in low or not any(w in low for w in ("missing", "undefined", "does not provide")):
        return []
    m = NIX_ATTR.search(s.stderr)
    attr = m.group(1) if m else "unknown"
    snippet = f"# Check if \"{attr}\" is defined in your flake.nix or imported modules\nnix flake show"
    desc = f"The attribute \"{attr}\" is not defined. Check your flake.nix or configuration."
    return [_suggest(s, "Missing Nix Attribute", desc, snippet, 0.9)]


def nix_evaluation_error(s: ErrorSummary) -> List[AnalysisSuggestion]:
    low = s.stderr.lower()
    nixy = s.command.startswith("nix") or s.command in ("home-manager", "darwin-rebuild") or "while evaluating" in low
    if "error:" not in low or not (nixy or "evaluation" in low):
        return []
    m = _NIX_ERROR.search(s.stderr)
    msg = m.group(1).strip()[:100] if m else "Unknown Nix error"
    snippet = f"{s.command_line} --show-trace"
    return [_suggest(s, "Nix Evaluation Error", f"Nix evaluation failed: {msg}", snippet, 0.75)]


def nix_buildenv_conflict(s: ErrorSummary) -> List[AnalysisSuggestion]:
    low = s.stderr.lower()
    collision = "collision between" in low or ("buildenv" in low and "conflict" in low)
    fonts = "font" in low and ("conflict" in low or "duplicate" in low)
    if not (collision or fonts):
        return []
    snippet = (
        "# Resolve by either:\n"
        "#  - buildEnv { ignoreCollisions = true; ... }\n"
        "#  - lib.hiPrio on the package that should win\n"
        "#  - dropping the duplicate package"
    )
    return [_suggest(s, "Nix buildEnv Collision", "Two packages in the environment provide the same file.", snippet, 0.8, "medium")]


# ---- network ----

def address_in_use(s: ErrorSummary) -> List[AnalysisSuggestion]:
    text = _combined(s)
    low = text.lower()
    if "address already in use" not in low and "eaddrinuse" not in low:
        return []
    m = first_match(_PORT, text)
    port = m.group(1) if m else "<port>"
    snippet = f"lsof -i :{port}\n# or\nss -ltnp | grep :{port}"
    return [_suggest(s, "Port Already In Use", f"Another process is already listening on port {port}.", snippet, 0.9)]


HEURISTICS: List[Tuple[str, Detector]] = [
    ("missing-file", missing_file),
    ("command-not-found", command_not_found),
    ("permission-denied", permission_denied),
    ("git-auth", git_auth),
    ("rate-limit", rate_limit),
    ("missing-token", missing_token),
    ("syntax-error", syntax_error),
    ("nix-missing-attribute", nix_missing_attribute),
    ("nix-evaluation-error", nix_evaluation_error),
    ("nix-buildenv-conflict", nix_buildenv_conflict),
    ("address-in-use", address_in_use),
    ("python-missing-module", python_missing_module),
]
