# shellsense/utils/config.py
from __future__ import annotations

import copy
import logging
import os
import pathlib
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .env import home_dir
from .errors import ConfigInvalid

log = logging.getLogger(__name__)

ProviderKind = Literal["mock", "ollama", "openai", "anthropic", "mcp"]
PROVIDER_KINDS = ("mock", "ollama", "openai", "anthropic", "mcp")

DEFAULT_CFG: Dict[str, Any] = {
    "agent": {
        "enabled": False,
        "capture_events": True,
        "analyze_failures": True,
        "analyze_patterns": True,
        "max_events": 10000,
        "retention_days": 7,
        "chunk_size": 4096,
        "redact": True,
        "history_limit": 5,
        "repo_search": True,
        "workers": 2,
        "poll_interval": 0.5,
        "spool_rotate_bytes": 1048576,
    },
    "llm": {
        "enabled": False,
        "type": "ollama",
        "timeout": 30.0,
        "ollama": {
            "base_url": os.environ.get("OLLAMA_URL", "http://localhost:11434"),
            "model": os.environ.get("SHELLSENSE_OLLAMA_MODEL", "llama3.2"),
        },
        "openai": {
            "model": os.environ.get("SHELLSENSE_OPENAI_MODEL", "gpt-4o-mini"),
            "base_url": "https://api.openai.com/v1",
        },
        "anthropic": {
            "model": os.environ.get("SHELLSENSE_ANTHROPIC_MODEL", "claude-3-7-sonnet-20250219"),
            "base_url": "https://api.anthropic.com",
        },
        "mcp": {"server_url": "", "tool_name": "analyze_failure"},
        "mock": {"delay": 0.0},
        "safety": {
            "require_review": True,
            "max_context_length": 8000,
            "cache_enabled": False,
            "cache_ttl": 3600,
            "extra_patterns": [],
        },
    },
}


# ---- validated views ----

class SafetyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    require_review: bool = True
    max_context_length: int = Field(default=8000, gt=0)
    cache_enabled: bool = False
    cache_ttl: float = Field(default=3600, ge=0)
    extra_patterns: List[str] = []


class LLMProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    type: ProviderKind = "ollama"
    timeout: float = Field(default=30.0, gt=0)
    ollama: Dict[str, Any] = {}
    openai: Dict[str, Any] = {}
    anthropic: Dict[str, Any] = {}
    mcp: Dict[str, Any] = {}
    mock: Dict[str, Any] = {}
    safety: SafetyConfig = SafetyConfig()

    def settings(self) -> Dict[str, Any]:
        """Per-kind settings block for the selected provider."""
        return dict(getattr(self, self.type) or {})


class AgentConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    capture_events: bool = True
    analyze_failures: bool = True
    analyze_patterns: bool = True
    max_events: int = Field(default=10000, ge=0)
    retention_days: int = Field(default=7, ge=0)
    chunk_size: int = Field(default=4096, gt=0)
    redact: bool = True
    history_limit: int = Field(default=5, ge=0)
    repo_search: bool = True
    workers: int = Field(default=2, ge=1)
    poll_interval: float = Field(default=0.5, gt=0)
    spool_rotate_bytes: int = Field(default=1048576, ge=0)
    home: str = ""
    llm: LLMProviderConfig = LLMProviderConfig()

    # ---- derived paths ----
    @property
    def home_path(self) -> pathlib.Path:
        return pathlib.Path(self.home) if self.home else home_dir()

    @property
    def db_path(self) -> pathlib.Path:
        return self.home_path / "events.sqlite"

    @property
    def spool_path(self) -> pathlib.Path:
        return self.home_path / "spool.jsonl"

    @property
    def status_path(self) -> pathlib.Path:
        return self.home_path / "status.json"

    @property
    def suggestions_path(self) -> pathlib.Path:
        return self.home_path / "suggestions.json"


def config_path() -> pathlib.Path:
    return home_dir() / "config.yaml"


def deepmerge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Fill keys missing from `a` with those of `b`, recursing into dicts. `a` wins."""
    for k, v in b.items():
        if k not in a or a[k] is None:
            a[k] = copy.deepcopy(v)
        elif isinstance(v, dict) and isinstance(a[k], dict):
            a[k] = deepmerge(a[k], v)
    return a


def load_raw_config() -> Dict[str, Any]:
    """Read config.yaml merged over defaults; writes the defaults on first run."""
    p = config_path()
    if p.exists():
        with p.open("r", encoding="utf-8") as f:
            try:
                cfg = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigInvalid(f"{p}: {e}") from e
        if not isinstance(cfg, dict):
            raise ConfigInvalid(f"{p}: top level must be a mapping")
        return deepmerge(cfg, DEFAULT_CFG)

    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8") as f:
        yaml.safe_dump(DEFAULT_CFG, f, sort_keys=False)
    return copy.deepcopy(DEFAULT_CFG)


def build_config(raw: Dict[str, Any], home: Optional[str] = None) -> AgentConfig:
    data = dict(raw.get("agent") or {})
    # a broken llm block only disables the provider layer
    try:
        data["llm"] = LLMProviderConfig.model_validate(raw.get("llm") or {})
    except ValidationError as e:
        log.warning("llm config invalid, provider disabled: %s", e)
        data["llm"] = LLMProviderConfig(enabled=False)
    if home:
        data["home"] = home
    try:
        return AgentConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigInvalid(str(e)) from e


def load_config() -> AgentConfig:
    return build_config(load_raw_config(), home=str(home_dir()))


def set_enabled(enabled: bool) -> AgentConfig:
    """Persist the agent enable flag and return the reloaded config."""
    raw = load_raw_config()
    raw.setdefault("agent", {})["enabled"] = bool(enabled)
    with config_path().open("w", encoding="utf-8") as f:
        yaml.safe_dump(raw, f, sort_keys=False)
    return load_config()
