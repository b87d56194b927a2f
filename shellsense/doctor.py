# shellsense/doctor.py
from __future__ import annotations

import os
from typing import Optional

from rich import print

from .core.store import EventStore
from .providers import create_provider
from .utils.config import AgentConfig, config_path, load_config
from .utils.env import load_env
from .utils.errors import ShellSenseError

CREDENTIALS = ("OPENAI_API_KEY", "ANTHROPIC_API_KEY")


def _yes(v) -> str:
    return "[green]yes[/green]" if v else "[red]no[/red]"


def main(cfg: Optional[AgentConfig] = None) -> int:
    load_env()
    cfg = cfg or load_config()
    llm = cfg.llm
    settings = llm.settings()

    print(f"config={config_path()}")
    print(f"home={cfg.home_path}")
    print(f"agent enabled? {_yes(cfg.enabled)}")
    print(f"capture_events={cfg.capture_events} redact={cfg.redact} retention_days={cfg.retention_days}")
    print(f"provider={llm.type} enabled? {_yes(llm.enabled)}")
    print(f"model={settings.get('model', '')}")
    print(f"require_review={llm.safety.require_review} max_context_length={llm.safety.max_context_length}")
    # presence only, never values
    for key in CREDENTIALS:
        print(f"{key} set? {_yes(os.getenv(key) or (llm.type in key.lower() and settings.get('api_key')))}")
    print(f"OLLAMA_URL={os.getenv('OLLAMA_URL', '')} OLLAMA_HOST={os.getenv('OLLAMA_HOST', '')}")

    provider = create_provider(llm)
    if provider is None:
        print("provider available? [dim]n/a (heuristics only)[/dim]")
    else:
        print(f"provider available? {_yes(provider.is_available())}")

    try:
        stats = EventStore(str(cfg.db_path)).get_stats()
    except ShellSenseError as e:
        print(f"[red]store unusable:[/red] {e}")
        return 1
    print(f"store={cfg.db_path} events={stats['total_events']} sessions={stats['sessions']} analyses={stats['analyses']}")
    for kind, n in sorted(stats["events_by_type"].items()):
        print(f"  {kind}: {n}")
    return 0
