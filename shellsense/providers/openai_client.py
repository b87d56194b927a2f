# shellsense/providers/openai_client.py
from __future__ import annotations

import os
from typing import Optional

import openai
from openai import OpenAI

from ..utils.errors import ProviderError, ProviderTimeout, ProviderUnavailable
from ..utils.prompt import SYSTEM_PROMPT, build_prompt
from ..utils.schema import MCPToolInput, MCPToolOutput
from .base import BaseProvider, extract_json, shape_output


class OpenAIProvider(BaseProvider):
    name = "openai"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.model = (self.settings.get("model") or "gpt-4o-mini").strip().strip("'").strip('"')
        self.base_url = self.settings.get("base_url") or None
        self._client: Optional[OpenAI] = None

    @property
    def api_key(self) -> str:
        return self.settings.get("api_key") or os.environ.get("OPENAI_API_KEY", "")

    def is_available(self) -> bool:
        return bool(self.api_key)

    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout, max_retries=0)
        return self._client

    def _call(self, tool_input: MCPToolInput) -> MCPToolOutput:
        if not self.api_key:
            raise ProviderUnavailable("openai_error:missing_api_key")
        try:
            r = self.client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(tool_input)},
                ],
                response_format={"type": "json_object"},
                temperature=0.2,
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeout(f"openai did not answer within {self.timeout}s") from e
        except openai.APIConnectionError as e:
            raise ProviderUnavailable(f"openai unreachable: {e}") from e
        except openai.APIStatusError as e:
            raise ProviderError(f"openai_error:{e.status_code} {e.message}", status=e.status_code) from e
        except openai.OpenAIError as e:
            raise ProviderError(f"openai_error:{type(e).__name__} {e}") from e

        txt = (r.choices[0].message.content or "").strip() if r.choices else ""
        obj = extract_json(txt)
        if obj is None:
            raise ProviderError(f"openai_error:could_not_parse_json: {txt[:180]}")
        tokens = getattr(r.usage, "total_tokens", None) if r.usage else None
        return shape_output(obj, self.name, self.model, command=tool_input.context_window.command, tokens_used=tokens)
