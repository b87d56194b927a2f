# shellsense/agent/repo.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..utils.schema import RepoMetadata

MAX_DEPTH = 10
ROOT_MARKERS = (".git", ".hg", ".svn", "flake.nix", ".gitignore")

# (marker file, language, framework), first hit wins
_MARKERS: List[Tuple[str, str, Optional[str]]] = [
    ("flake.nix", "nix", "flake"),
    ("default.nix", "nix", None),
    ("shell.nix", "nix", None),
    ("Cargo.toml", "rust", "cargo"),
    ("go.mod", "go", None),
    ("pyproject.toml", "python", None),
    ("setup.py", "python", None),
    ("requirements.txt", "python", None),
    ("package.json", "javascript", None),
    ("tsconfig.json", "typescript", None),
    ("Gemfile", "ruby", "bundler"),
    ("pom.xml", "java", "maven"),
    ("build.gradle", "java", "gradle"),
    ("Makefile", None, "make"),
]

_JS_FRAMEWORKS: Dict[str, str] = {
    "svelte": "svelte",
    "next": "next",
    "react": "react",
    "vue": "vue",
    "@tauri-apps/api": "tauri",
    "express": "express",
}
_PY_FRAMEWORKS = ("django", "flask", "fastapi", "textual")


def find_repo_root(cwd: str, max_depth: int = MAX_DEPTH) -> Optional[Path]:
    """Walk up from `cwd` looking for a repository marker; None past max_depth or /."""
    if not cwd:
        return None
    current = Path(cwd).expanduser()
    for _ in range(max_depth + 1):
        if any((current / m).exists() for m in ROOT_MARKERS):
            return current
        if current.parent == current:
            break
        current = current.parent
    return None


def _vcs(root: Path) -> str:
    for name, kind in ((".git", "git"), (".hg", "hg"), (".svn", "svn")):
        if (root / name).exists():
            return kind
    return "none"


def _read(p: Path, limit: int = 65536) -> str:
    try:
        return p.read_text(encoding="utf-8", errors="ignore")[:limit]
    except OSError:
        return ""


def repo_metadata(cwd: str) -> RepoMetadata:
    root = find_repo_root(cwd)
    if root is None:
        return RepoMetadata()

    files: List[str] = []
    language: Optional[str] = None
    framework: Optional[str] = None
    for name, lang, fw in _MARKERS:
        if (root / name).exists():
            files.append(name)
            language = language or lang
            framework = framework or fw

    if "package.json" in files:
        pkg = _read(root / "package.json")
        for dep, fw in _JS_FRAMEWORKS.items():
            if f'"{dep}"' in pkg:
                framework = fw
                break
    if language == "python":
        blob = _read(root / "pyproject.toml") + _read(root / "requirements.txt")
        for fw in _PY_FRAMEWORKS:
            if fw in blob.lower():
                framework = fw
                break

    return RepoMetadata(root=str(root), type=_vcs(root), files=files, language=language, framework=framework)
