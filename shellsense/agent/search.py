# shellsense/agent/search.py
from __future__ import annotations

import fnmatch
import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from ..utils.schema import AnalysisSuggestion, ErrorSummary
from .heuristics import MISSING_PATH, NIX_ATTR, TOKEN_NAME, first_match

log = logging.getLogger(__name__)

SEARCH_TIMEOUT = 5.0
MAX_RESULTS = 20
SHOW_RESULTS = 5
SKIP_DIRS = {".git", ".hg", ".svn", "node_modules", ".venv", "venv", "__pycache__", "target", "result", ".direnv"}

TOKEN_GLOBS = ("*.sh", "*.env", ".env*", "*.nix", "*.yml", "*.yaml", "*.toml")
NIX_GLOBS = ("*.nix",)


def _relative(root: Path, lines: Sequence[str]) -> List[str]:
    out: List[str] = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            out.append(str(Path(line).resolve().relative_to(root.resolve())))
        except ValueError:
            out.append(line)
    return sorted(set(out))[:MAX_RESULTS]


def _run(argv: List[str], cwd: Path) -> Optional[List[str]]:
    """stdout lines, or None when the tool is missing or errored (rc > 1)."""
    if shutil.which(argv[0]) is None:
        return None
    try:
        cp = subprocess.run(argv, cwd=str(cwd), capture_output=True, text=True, timeout=SEARCH_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as e:
        log.debug("%s failed: %s", argv[0], e)
        return None
    if cp.returncode > 1:
        return None
    return cp.stdout.splitlines()


def _walk(root: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS]
        for name in filenames:
            yield Path(dirpath) / name


def search_in_repo(root: Path, needle: str, globs: Sequence[str] = ()) -> List[str]:
    """Files under `root` containing `needle` literally. ripgrep, then grep, then a plain walk."""
    lines = _run(["rg", "-l", "-F", *[a for g in globs for a in ("-g", g)], "--", needle, "."], root)
    if lines is None:
        lines = _run(
            ["grep", "-rlF", *[f"--include={g}" for g in globs],
             *[f"--exclude-dir={d}" for d in sorted(SKIP_DIRS)], "--", needle, "."],
            root,
        )
    if lines is not None:
        return _relative(root, [str(root / l) for l in lines])

    found: List[str] = []
    for p in _walk(root):
        if globs and not any(fnmatch.fnmatch(p.name, g) for g in globs):
            continue
        try:
            if needle in p.read_text(encoding="utf-8", errors="ignore"):
                found.append(str(p))
        except OSError:
            continue
        if len(found) >= MAX_RESULTS:
            break
    return _relative(root, found)


def find_files_named(root: Path, name: str) -> List[str]:
    lines = _run(["rg", "--files", "-g", name], root)
    if lines is not None:
        return _relative(root, [str(root / l) for l in lines])
    found = [str(p) for p in _walk(root) if p.name == name]
    return _relative(root, found[:MAX_RESULTS])


def _listing(paths: Sequence[str]) -> str:
    return "\n".join(f"# - {p}" for p in paths[:SHOW_RESULTS])


def _suggest(s: ErrorSummary, title: str, description: str, snippet: str, confidence: float) -> AnalysisSuggestion:
    return AnalysisSuggestion(
        title=title,
        description=description,
        actionable_snippet=snippet,
        confidence=confidence,
        type="tip",
        priority="medium",
        source="local-search",
        command=s.command_line,
        timestamp=s.timestamp,
    )


def local_search(summary: ErrorSummary, root: Optional[Path]) -> List[AnalysisSuggestion]:
    """Look through the repository for files related to the failure."""
    if root is None:
        return []
    out: List[AnalysisSuggestion] = []
    text = f"{summary.stderr}\n{summary.stdout}"

    if "No such file or directory" in text:
        m = first_match(MISSING_PATH, text)
        if m:
            name = os.path.basename(m.group(1).strip().rstrip("/"))
            hits = find_files_named(root, name) if name else []
            if hits:
                out.append(_suggest(
                    summary,
                    "Similar Files Found",
                    f"Files named '{name}' exist elsewhere in the repository.",
                    f"# Found:\n{_listing(hits)}",
                    0.7,
                ))

    m = NIX_ATTR.search(summary.stderr)
    if m:
        attr = m.group(1)
        hits = search_in_repo(root, attr.split(".")[-1], NIX_GLOBS)
        if hits:
            out.append(_suggest(
                summary,
                "Found Attribute References",
                f"Found references to \"{attr}\" in your repository. Check these files for context.",
                f"# Found in files:\n{_listing(hits)}",
                0.7,
            ))

    m = TOKEN_NAME.search(text)
    if m and re.search(r"not set|missing|required|unset|empty|invalid", text, re.I):
        token = m.group(1)
        hits = search_in_repo(root, token, TOKEN_GLOBS)
        if hits:
            out.append(_suggest(
                summary,
                "Found Token References",
                f"Found references to {token} in your repository. Check these files for configuration.",
                f"# {token} references found in:\n{_listing(hits)}\n\n# Check if {token} is set:\necho ${{{token}:+set}}",
                0.7,
            ))
    return out
