# beta
# shellsense/providers/anthropic_client.py
from __future__ import annotations

import os

import requests

from ..utils.errors import ProviderError, ProviderTimeout, ProviderUnavailable
from ..utils.prompt import SYSTEM_PROMPT, build_prompt
from ..utils.schema import MCPToolInput, MCPToolOutput
from .base import BaseProvider, extract_json, shape_output

API_VERSION = os.environ.get("ANTHROPIC_VERSION", "2023-06-01")
MAX_TOKENS = 800


class AnthropicProvider(BaseProvider):
    name = "anthropic"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # strip accidental quotes written by installers
        self.model = (self.settings.get("model") or "claude-3-7-sonnet-20250219").strip().strip("'").strip('"')
        self.base_url = (self.settings.get("base_url") or "https://api.anthropic.com").rstrip("/")

    @property
    def api_key(self) -> str:
        return self.settings.get("api_key") or os.environ.get("ANTHROPIC_API_KEY", "")

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _call(self, tool_input: MCPToolInput) -> MCPToolOutput:
        key = self.api_key
        if not key:
            raise ProviderUnavailable("missing ANTHROPIC_API_KEY")

        headers = {
            "x-api-key": key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }
        body = {
            "model": self.model,
            "max_tokens": MAX_TOKENS,
            "temperature": 0.2,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": build_prompt(tool_input)}],
        }

        try:
            r = requests.post(f"{self.base_url}/v1/messages", headers=headers, json=body, timeout=self.timeout)
        except requests.Timeout as e:
            raise ProviderTimeout(f"anthropic did not answer within {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise ProviderUnavailable(f"anthropic unreachable: {e}") from e

        if r.status_code >= 400:
            raise ProviderError(f"anthropic_error:{r.status_code} {r.text[:200]}", status=r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise ProviderError(f"anthropic_bad_json:{e}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"anthropic_bad_json:expected an object, got {type(data).__name__}")

        # content is a list of blocks; concatenate text blocks
        text = "".join(
            block.get("text", "")
            for block in (data.get("content") or [])
            if isinstance(block, dict) and block.get("type") == "text"
        )
        obj = extract_json(text)
        if obj is None:
            raise ProviderError(f"unparsable_llm_output: {text[:120]}")

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        tokens = (usage.get("input_tokens") or 0) + (usage.get("output_tokens") or 0)
        return shape_output(
            obj, self.name, self.model, command=tool_input.context_window.command, tokens_used=tokens or None
        )
