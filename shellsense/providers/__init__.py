# shellsense/providers/__init__.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Type, Union

from pydantic import ValidationError

from ..agent.cache import ResponseCache
from ..utils.config import PROVIDER_KINDS, LLMProviderConfig
from ..utils.errors import ConfigInvalid, ShellSenseError
from .anthropic_client import AnthropicProvider
from .base import BaseProvider, Reviewer
from .local_ollama import OllamaProvider
from .mcp import MCPProvider
from .mock import MockProvider
from .openai_client import OpenAIProvider

log = logging.getLogger(__name__)

PROVIDERS: Dict[str, Type[BaseProvider]] = {
    "mock": MockProvider,
    "ollama": OllamaProvider,
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "mcp": MCPProvider,
}


def create_provider(
    config: Union[LLMProviderConfig, Dict[str, Any], None],
    cache: Optional[ResponseCache] = None,
    reviewer: Optional[Reviewer] = None,
) -> Optional[BaseProvider]:
    """
    Build the configured provider, or None when the provider layer is off or
    the configuration cannot be used. Never raises for bad configuration.
    """
    if config is None:
        return None
    if isinstance(config, dict):
        kind = config.get("type")
        if kind is not None and kind not in PROVIDER_KINDS:
            log.warning("%s", ConfigInvalid(f"unknown provider type {kind!r}"))
            return None
        try:
            config = LLMProviderConfig.model_validate(config)
        except ValidationError as e:
            log.warning("%s", ConfigInvalid(f"provider config: {e}"))
            return None
    if not config.enabled:
        return None

    cls = PROVIDERS.get(config.type)
    if cls is None:
        log.warning("%s", ConfigInvalid(f"unknown provider type {config.type!r}"))
        return None

    safety = config.safety
    # mock skips review unless review was asked for explicitly
    if config.type == "mock" and "require_review" not in safety.model_fields_set:
        safety = safety.model_copy(update={"require_review": False})

    if cache is None and safety.cache_enabled:
        cache = ResponseCache(ttl=safety.cache_ttl)

    try:
        return cls(config.settings(), safety=safety, cache=cache, reviewer=reviewer, timeout=config.timeout)
    except (ShellSenseError, ValueError, TypeError) as e:
        log.warning("could not construct %s provider: %s", config.type, e)
        return None


__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "MCPProvider",
    "MockProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "PROVIDERS",
    "create_provider",
]
