# shellsense/providers/local_ollama.py
from __future__ import annotations

import logging
import os
from typing import List, Optional

import requests

from ..utils.errors import ProviderError, ProviderTimeout, ProviderUnavailable
from ..utils.prompt import SYSTEM_PROMPT, build_prompt
from ..utils.schema import MCPToolInput, MCPToolOutput
from .base import BaseProvider, extract_json, shape_output

log = logging.getLogger(__name__)

PING_TIMEOUT = 2.0


# ---- Endpoint helpers -------------------------------------------------------

def _normalize_base(u: Optional[str]) -> str:
    u = (u or "").strip()
    if not u:
        return "http://127.0.0.1:11434"
    if not (u.startswith("http://") or u.startswith("https://")):
        u = "http://" + u
    return u.rstrip("/")


def _clean_tag(tag: Optional[str]) -> str:
    """Strip whitespace and any accidental shell quotes from a model tag."""
    if not tag:
        return ""
    return tag.strip().strip('"').strip("'")


class OllamaProvider(BaseProvider):
    name = "ollama"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # OLLAMA_URL wins, then OLLAMA_HOST, then config
        self.base_url = _normalize_base(
            os.environ.get("OLLAMA_URL") or os.environ.get("OLLAMA_HOST") or self.settings.get("base_url")
        )
        self.model = _clean_tag(self.settings.get("model") or "llama3.2")

    def _installed_models(self) -> List[str]:
        r = requests.get(f"{self.base_url}/api/tags", timeout=PING_TIMEOUT)
        if not r.ok:
            return []
        # schema: {"models":[{"name":"llama3.2:latest", ...}, ...]}
        data = r.json()
        if not isinstance(data, dict):
            return []
        return [m["name"] for m in data.get("models") or [] if isinstance(m, dict) and m.get("name")]

    def is_available(self) -> bool:
        try:
            installed = self._installed_models()
        except (requests.RequestException, ValueError) as e:
            log.debug("ollama not reachable at %s: %s", self.base_url, e)
            return False
        if not installed:
            return False
        # "llama3.2" matches "llama3.2:latest"
        return any(m == self.model or m.split(":", 1)[0] == self.model for m in installed)

    def _call(self, tool_input: MCPToolInput) -> MCPToolOutput:
        body = {
            "model": self.model,
            "system": SYSTEM_PROMPT,
            "prompt": build_prompt(tool_input),
            "stream": False,
            "format": "json",
            "options": {"temperature": 0.2, "top_p": 0.9, "num_ctx": 4096},
        }
        try:
            r = requests.post(f"{self.base_url}/api/generate", json=body, timeout=self.timeout)
        except requests.Timeout as e:
            raise ProviderTimeout(f"ollama did not answer within {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise ProviderUnavailable(f"ollama unreachable at {self.base_url}: {e}") from e

        if not r.ok:
            raise ProviderError(f"ollama_http_error:{r.status_code} {r.text[:200]}", status=r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise ProviderError(f"ollama_bad_json:{e}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"ollama_bad_json:expected an object, got {type(data).__name__}")

        raw = data.get("response", "") or ""
        obj = extract_json(raw)
        if obj is None:
            raise ProviderError(f"parse_error:response_not_json: {raw[:120]}")

        tokens = (data.get("prompt_eval_count") or 0) + (data.get("eval_count") or 0)
        return shape_output(
            obj, self.name, self.model, command=tool_input.context_window.command, tokens_used=tokens or None
        )
