# shellsense/providers/mcp.py
"""
Generic structured-tool backend: the failure context is handed to a remote
tool server as a JSON-RPC 2.0 `tools/call` request over HTTP.

The tool receives the sanitized MCPToolInput as its arguments and must answer
with MCPToolOutput-shaped JSON, either as `structuredContent` or inside a text
content block.
"""
from __future__ import annotations

import itertools
import logging
from typing import Any, Dict

import requests

from ..utils.errors import ProviderError, ProviderTimeout, ProviderUnavailable
from ..utils.schema import MCPToolInput, MCPToolOutput
from .base import BaseProvider, extract_json, shape_output

log = logging.getLogger(__name__)

PING_TIMEOUT = 3.0


class MCPProvider(BaseProvider):
    name = "mcp"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.server_url = (self.settings.get("server_url") or "").rstrip("/")
        self.tool_name = self.settings.get("tool_name") or "analyze_failure"
        self.model = self.tool_name
        self._ids = itertools.count(1)

    def _rpc(self, method: str, params: Dict[str, Any], timeout: float) -> Any:
        if not self.server_url:
            raise ProviderUnavailable("mcp server_url not configured")
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            r = requests.post(self.server_url, json=body, timeout=timeout)
        except requests.Timeout as e:
            raise ProviderTimeout(f"mcp {method} timed out after {timeout}s") from e
        except requests.ConnectionError as e:
            raise ProviderUnavailable(f"mcp server unreachable: {e}") from e
        if not r.ok:
            raise ProviderError(f"mcp_http_error:{r.status_code}", status=r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise ProviderError(f"mcp_bad_json:{e}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"mcp_bad_json:expected an object, got {type(data).__name__}")
        if data.get("error"):
            err = data["error"]
            raise ProviderError(f"mcp_rpc_error:{err.get('code')} {err.get('message')}")
        return data.get("result")

    def is_available(self) -> bool:
        try:
            result = self._rpc("tools/list", {}, PING_TIMEOUT) or {}
        except (ProviderUnavailable, ProviderTimeout, ProviderError) as e:
            log.debug("mcp server not usable: %s", e)
            return False
        if not isinstance(result, dict):
            return False
        names = [t.get("name") for t in result.get("tools", []) if isinstance(t, dict)]
        return self.tool_name in names

    def _call(self, tool_input: MCPToolInput) -> MCPToolOutput:
        result = self._rpc(
            "tools/call",
            {"name": self.tool_name, "arguments": tool_input.model_dump(mode="json")},
            self.timeout,
        ) or {}
        if not isinstance(result, dict):
            raise ProviderError(f"mcp tool returned {type(result).__name__}, expected an object")
        if result.get("isError"):
            raise ProviderError("mcp tool reported an error")

        obj = result.get("structuredContent")
        if not isinstance(obj, dict):
            text = "".join(
                block.get("text", "")
                for block in (result.get("content") or [])
                if isinstance(block, dict) and block.get("type") == "text"
            )
            obj = extract_json(text)
        if obj is None:
            raise ProviderError("mcp tool returned no JSON payload")
        return shape_output(obj, self.name, self.model, command=tool_input.context_window.command)
