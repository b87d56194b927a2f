# shellsense/utils/env.py
import os
import pathlib
from typing import Dict


def home_dir() -> pathlib.Path:
    """Data/config home: $SHELLSENSE_HOME or ~/.shellsense."""
    return pathlib.Path(os.path.expanduser(os.environ.get("SHELLSENSE_HOME", "~/.shellsense")))


def load_env(path: str = "") -> Dict[str, str]:
    """
    Load <home>/.env into the current process env (without clobbering
    anything already set in the real environment). Returns the parsed dict.

    This is where provider credentials (OPENAI_API_KEY, ANTHROPIC_API_KEY,
    OLLAMA_URL) normally live; they are never copied into events or
    suggestions.

    Rules:
      - Lines beginning with '#' are ignored.
      - Blank lines ignored.
      - An optional leading 'export ' is dropped.
      - First '=' splits KEY and VALUE; matching surrounding quotes are stripped.
    """
    p = pathlib.Path(os.path.expanduser(path)) if path else home_dir() / ".env"
    if not p.exists():
        return {}

    env: Dict[str, str] = {}
    for raw in p.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        k, v = line.split("=", 1)
        k, v = k.strip(), v.strip()
        if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
            v = v[1:-1]
        env[k] = v
        os.environ.setdefault(k, v)
    return env
