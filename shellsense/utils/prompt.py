import json

from .schema import MCPToolInput

SYSTEM_PROMPT = """You are shellsense, a terminal assistant. A shell command just failed.
Explain the most likely cause and propose concrete fixes, based ONLY on the context given.

STRICT OUTPUT: Return ONLY JSON matching this schema:
{
  "suggestions": [{"title": "", "description": "", "actionable_snippet": "",
                   "confidence": 0.0, "type": "command|optimization|shortcut|warning|tip",
                   "priority": "low|medium|high"}]
}

Guidelines:
- NEVER claim to have run anything. All fixes are suggestions.
- Keep 1-4 suggestions, best first.
- `actionable_snippet` must be runnable as-is, or empty.
- Do not repeat suggestions already listed under previous_suggestions.
- Placeholders like [REDACTED:abcd...] stand for secrets; never ask for their values.
"""


def build_prompt(tool_input: MCPToolInput) -> str:
    # Context is already sanitized and truncated upstream
    ctx = tool_input.context_window
    compact = {
        "command": " ".join([ctx.command, *ctx.args]).strip(),
        "cwd": ctx.cwd,
        "exit_code": ctx.exit_code,
        "stderr": ctx.stderr,
        "stdout": ctx.stdout,
        "recent_commands": [
            {"cmd": " ".join([p.command, *p.args]).strip(), "exit": p.exit_code}
            for p in ctx.previous_commands[-6:]
        ],
        "repo": tool_input.repo_metadata.model_dump(exclude={"files"}),
        "previous_suggestions": [s.title for s in tool_input.previous_suggestions][:6],
    }
    return json.dumps(compact, ensure_ascii=False)
