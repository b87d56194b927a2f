# shellsense/providers/mock.py
from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple

from ..core.events import now_ms
from ..utils.schema import AnalysisSuggestion, MCPToolInput, MCPToolOutput, Provenance
from .base import BaseProvider

STDERR_KEY_CHARS = 100


class MockProvider(BaseProvider):
    """
    Deterministic stand-in backend. Still runs the full envelope, so the
    context it sees is sanitized like any real provider's.

    settings:
      delay      -- seconds to sleep per call (for timeout tests)
      available  -- what is_available() reports (default True)
      error      -- exception instance raised from every call, if set
    """

    name = "mock"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.model = "mock"
        self.delay = float(self.settings.get("delay", 0.0) or 0.0)
        self.available = bool(self.settings.get("available", True))
        self.error: Optional[Exception] = self.settings.get("error")
        self.calls = 0
        self.last_input: Optional[MCPToolInput] = None
        self._responses: Dict[Tuple[str, int, str], MCPToolOutput] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(command: str, exit_code: int, stderr: str) -> Tuple[str, int, str]:
        return command, int(exit_code), stderr[:STDERR_KEY_CHARS]

    def set_response(self, command: str, exit_code: int, stderr: str, output: MCPToolOutput) -> None:
        self._responses[self._key(command, exit_code, stderr)] = output

    def clear_responses(self) -> None:
        self._responses.clear()

    def is_available(self) -> bool:
        return self.available

    def _call(self, tool_input: MCPToolInput) -> MCPToolOutput:
        with self._lock:
            self.calls += 1
            self.last_input = tool_input
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error

        ctx = tool_input.context_window
        preset = self._responses.get(self._key(ctx.command, ctx.exit_code, ctx.stderr))
        if preset is not None:
            return preset

        return MCPToolOutput(
            suggestions=[
                AnalysisSuggestion(
                    title="Mock Suggestion",
                    description=f"This is a mock suggestion for command: {ctx.command}",
                    actionable_snippet=f"# Mock fix for {ctx.command}",
                    confidence=0.7,
                    type="tip",
                    priority="medium",
                    source=self.name,
                    command=ctx.command,
                    timestamp=ctx.timestamp,
                )
            ],
            provenance=Provenance(provider=self.name, model=self.model, timestamp=now_ms()),
        )
