# tests/test_providers.py
import json
import threading
from unittest import mock

import httpx
import openai
import pytest
import requests

from shellsense.agent.cache import ResponseCache, fingerprint
from shellsense.providers import AnthropicProvider, MCPProvider, MockProvider, OllamaProvider, OpenAIProvider, create_provider
from shellsense.providers.base import extract_json, shape_output
from shellsense.utils.config import LLMProviderConfig, SafetyConfig
from shellsense.utils.errors import ProviderError, ProviderTimeout, ProviderUnavailable
from shellsense.utils.schema import AnalysisContext, ErrorSummary, MCPToolInput, MCPToolOutput, Provenance

NO_REVIEW = SafetyConfig(require_review=False)

MODEL_JSON = {
    "suggestions": [
        {"title": "Create the file", "description": "bar.txt is missing", "confidence": 1.7,
         "type": "command", "priority": "high", "actionable_snippet": "touch bar.txt"},
        {"title": "", "description": "dropped"},
        {"title": "Odd", "type": "weird", "priority": "urgent", "confidence": "nan"},
    ]
}


def _input(command="grep", args=("foo", "bar.txt"), stderr="grep: bar.txt: No such file or directory", env=None):
    ctx = AnalysisContext(command=command, args=list(args), exit_code=2, stderr=stderr, env=env or {})
    return MCPToolInput(context_window=ctx, error_summary=ErrorSummary.from_context(ctx))


def _response(status=200, payload=None, text=""):
    r = mock.Mock()
    r.status_code = status
    r.ok = status < 400
    r.text = text or json.dumps(payload or {})
    r.json.return_value = payload
    return r


# ---- parsing ----

def test_extract_json_from_prose():
    assert extract_json('Sure! {"suggestions": []} hope that helps') == {"suggestions": []}
    assert extract_json("no json here") is None
    assert extract_json("[1, 2]") is None


def test_shape_output_clamps_and_coerces():
    out = shape_output(MODEL_JSON, "ollama", "llama3.2", command="grep")
    assert [s.title for s in out.suggestions] == ["Create the file", "Odd"]
    first, odd = out.suggestions
    assert first.confidence == 1.0
    assert first.actionable_snippet == "touch bar.txt"
    assert odd.type == "tip" and odd.priority == "medium" and odd.confidence == 0.5
    assert out.provenance.provider == "ollama"
    assert out.provenance.model == "llama3.2"
    assert all(s.timestamp == out.provenance.timestamp for s in out.suggestions)


# ---- envelope: cache ----

def test_cache_hit_skips_provider_and_keeps_timestamp():
    p = MockProvider(safety=NO_REVIEW, cache=ResponseCache(ttl=60))
    first = p.analyze(_input())
    second = p.analyze(_input())
    assert p.calls == 1
    assert second.provenance.timestamp == first.provenance.timestamp
    assert second.provenance.cached is True
    assert first.provenance.cached is False


def test_cache_expires_after_ttl():
    now = [0.0]
    p = MockProvider(safety=NO_REVIEW, cache=ResponseCache(ttl=10, clock=lambda: now[0]))
    p.analyze(_input())
    now[0] = 11.0
    p.analyze(_input())
    assert p.calls == 2


def test_expired_entries_are_evicted_when_storing():
    now = [0.0]
    cache = ResponseCache(ttl=10, clock=lambda: now[0])
    out = MCPToolOutput(provenance=Provenance(provider="mock"))
    cache.put("old", out)
    now[0] = 11.0
    cache.get_or_compute("new", lambda: out)
    assert len(cache) == 1
    assert set(cache._locks) == {"new"}
    assert cache.get("old") is None


def test_concurrent_identical_requests_call_once():
    p = MockProvider({"delay": 0.2}, safety=NO_REVIEW, cache=ResponseCache(ttl=60))
    threads = [threading.Thread(target=p.analyze, args=(_input(),)) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert p.calls == 1


def test_fingerprint_ignores_stderr_tail():
    a = AnalysisContext(command="x", stderr="e" * 500 + "tail one")
    b = AnalysisContext(command="x", stderr="e" * 500 + "tail two")
    c = AnalysisContext(command="x", exit_code=3, stderr="e" * 500)
    assert fingerprint(a) == fingerprint(b)
    assert fingerprint(a) != fingerprint(c)


def test_provider_errors_are_not_cached():
    p = MockProvider({"error": ProviderError("nope")}, safety=NO_REVIEW, cache=ResponseCache(ttl=60))
    for _ in range(2):
        with pytest.raises(ProviderError):
            p.analyze(_input())
    assert p.calls == 2


# ---- envelope: review + sanitization ----

def test_review_required_without_reviewer_declines():
    p = MockProvider(safety=SafetyConfig(require_review=True))
    with pytest.raises(ProviderUnavailable, match="review declined"):
        p.analyze(_input())
    assert p.calls == 0


def test_reviewer_sees_sanitized_text_and_can_refuse():
    seen = []

    def refuse(text):
        seen.append(text)
        return False

    p = MockProvider(safety=SafetyConfig(require_review=True), reviewer=refuse)
    with pytest.raises(ProviderUnavailable):
        p.analyze(_input(env={"API_KEY": "sk-1234567890"}, stderr="password=hunter2222"))
    assert p.calls == 0
    assert "hunter2222" not in seen[0]


def test_reviewer_approval_sends_sanitized_truncated_input():
    p = MockProvider(safety=SafetyConfig(require_review=True, max_context_length=100), reviewer=lambda text: True)
    p.analyze(_input(stderr="x" * 1000 + " token=abcdef123456", env={"GITHUB_TOKEN": "ghp_whatever"}))
    sent = p.last_input.context_window
    assert "abcdef123456" not in sent.stderr
    assert len(sent.stderr) + len(sent.stdout) <= 100
    assert sent.env["GITHUB_TOKEN"] == "[REDACTED]"
    assert p.last_input.error_summary.stderr == sent.stderr


def test_mock_preset_response():
    p = MockProvider(safety=NO_REVIEW)
    preset = shape_output(MODEL_JSON, "mock", "mock")
    p.set_response("grep", 2, "grep: bar.txt: No such file or directory", preset)
    out = p.analyze(_input())
    assert [s.title for s in out.suggestions] == [s.title for s in preset.suggestions]
    assert out.provenance == preset.provenance
    p.clear_responses()
    assert p.analyze(_input()).suggestions[0].title == "Mock Suggestion"


# ---- factory ----

@pytest.mark.parametrize(
    "config",
    [
        None,
        {"enabled": False, "type": "mock"},
        {"enabled": True, "type": "carrier-pigeon"},
        {"enabled": True, "type": "mock", "timeout": -1},
        LLMProviderConfig(enabled=False, type="openai"),
    ],
)
def test_create_provider_returns_none(config):
    assert create_provider(config) is None


def test_create_provider_builds_each_kind(monkeypatch):
    expected = {"mock": MockProvider, "ollama": OllamaProvider, "openai": OpenAIProvider,
                "anthropic": AnthropicProvider, "mcp": MCPProvider}
    for kind, cls in expected.items():
        assert isinstance(create_provider({"enabled": True, "type": kind}), cls)


def test_create_provider_mock_review_defaults():
    assert create_provider({"enabled": True, "type": "mock"}).require_review is False
    reviewed = create_provider({"enabled": True, "type": "mock", "safety": {"require_review": True}})
    assert reviewed.require_review is True
    real = create_provider({"enabled": True, "type": "ollama"})
    assert real.require_review is True


def test_create_provider_wires_cache():
    p = create_provider({"enabled": True, "type": "mock", "safety": {"cache_enabled": True, "cache_ttl": 5}})
    assert isinstance(p.cache, ResponseCache)
    assert p.cache.ttl == 5


# ---- ollama ----

def test_ollama_availability(monkeypatch):
    monkeypatch.delenv("OLLAMA_URL", raising=False)
    monkeypatch.delenv("OLLAMA_HOST", raising=False)
    p = OllamaProvider({"model": "llama3.2", "base_url": "localhost:11434"})
    assert p.base_url == "http://localhost:11434"
    tags = _response(payload={"models": [{"name": "llama3.2:latest"}]})
    with mock.patch("shellsense.providers.local_ollama.requests.get", return_value=tags) as get:
        assert p.is_available()
    assert get.call_args[0][0] == "http://localhost:11434/api/tags"
    with mock.patch("shellsense.providers.local_ollama.requests.get", side_effect=requests.ConnectionError("down")):
        assert not p.is_available()


def test_ollama_call(monkeypatch):
    monkeypatch.setenv("OLLAMA_URL", "http://gpu-box:11434/")
    p = OllamaProvider({"model": "'qwen2.5'"}, safety=NO_REVIEW)
    assert p.base_url == "http://gpu-box:11434" and p.model == "qwen2.5"
    resp = _response(payload={"response": json.dumps(MODEL_JSON), "prompt_eval_count": 10, "eval_count": 5})
    with mock.patch("shellsense.providers.local_ollama.requests.post", return_value=resp) as post:
        out = p.analyze(_input())
    body = post.call_args.kwargs["json"]
    assert body["format"] == "json" and body["stream"] is False
    assert out.provenance.tokens_used == 15
    assert out.suggestions[0].source == "ollama"


def test_ollama_errors(monkeypatch):
    monkeypatch.delenv("OLLAMA_URL", raising=False)
    monkeypatch.delenv("OLLAMA_HOST", raising=False)
    p = OllamaProvider({}, safety=NO_REVIEW)
    with mock.patch("shellsense.providers.local_ollama.requests.post", side_effect=requests.Timeout()):
        with pytest.raises(ProviderTimeout):
            p.analyze(_input())
    with mock.patch("shellsense.providers.local_ollama.requests.post", return_value=_response(500, {}, "oops")):
        with pytest.raises(ProviderError) as exc:
            p.analyze(_input())
    assert exc.value.status == 500
    with mock.patch("shellsense.providers.local_ollama.requests.post", return_value=_response(payload={"response": "not json"})):
        with pytest.raises(ProviderError):
            p.analyze(_input())


# ---- openai ----

def _completion(content, total_tokens=42):
    msg = mock.Mock(content=content)
    return mock.Mock(choices=[mock.Mock(message=msg)], usage=mock.Mock(total_tokens=total_tokens))


def test_openai_available_only_with_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert not OpenAIProvider({}).is_available()
    assert OpenAIProvider({"api_key": "from-config"}).is_available()
    monkeypatch.setenv("OPENAI_API_KEY", "from-env")
    assert OpenAIProvider({}).is_available()


def test_openai_call(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test")
    p = OpenAIProvider({"model": "gpt-4o-mini"}, safety=NO_REVIEW)
    fake = mock.Mock()
    fake.chat.completions.create.return_value = _completion(json.dumps(MODEL_JSON))
    p._client = fake
    out = p.analyze(_input())
    kwargs = fake.chat.completions.create.call_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["model"] == "gpt-4o-mini"
    assert out.provenance.tokens_used == 42
    assert out.suggestions[0].title == "Create the file"


def test_openai_error_mapping(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test")
    p = OpenAIProvider({}, safety=NO_REVIEW)
    req = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    fake = mock.Mock()
    p._client = fake

    fake.chat.completions.create.side_effect = openai.APITimeoutError(request=req)
    with pytest.raises(ProviderTimeout):
        p.analyze(_input())

    fake.chat.completions.create.side_effect = openai.APIStatusError(
        "rate limited", response=httpx.Response(429, request=req), body=None
    )
    with pytest.raises(ProviderError) as exc:
        p.analyze(_input())
    assert exc.value.status == 429

    fake.chat.completions.create.side_effect = None
    fake.chat.completions.create.return_value = _completion("I cannot help with that")
    with pytest.raises(ProviderError):
        p.analyze(_input())


# ---- anthropic ----

def test_anthropic_call(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    p = AnthropicProvider({}, safety=NO_REVIEW)
    payload = {
        "content": [{"type": "text", "text": "Here you go: " + json.dumps(MODEL_JSON)}],
        "usage": {"input_tokens": 7, "output_tokens": 3},
    }
    with mock.patch("shellsense.providers.anthropic_client.requests.post", return_value=_response(payload=payload)) as post:
        out = p.analyze(_input())
    assert post.call_args[0][0] == "https://api.anthropic.com/v1/messages"
    headers = post.call_args.kwargs["headers"]
    assert headers["x-api-key"] == "test-key" and "anthropic-version" in headers
    assert out.provenance.tokens_used == 10
    assert out.provenance.provider == "anthropic"


def test_anthropic_without_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    p = AnthropicProvider({}, safety=NO_REVIEW)
    assert not p.is_available()
    with pytest.raises(ProviderUnavailable):
        p.analyze(_input())


# ---- mcp ----

def test_mcp_availability_and_call():
    p = MCPProvider({"server_url": "http://tools.local/rpc"}, safety=NO_REVIEW)
    listing = _response(payload={"jsonrpc": "2.0", "id": 1, "result": {"tools": [{"name": "analyze_failure"}]}})
    answer = _response(payload={"jsonrpc": "2.0", "id": 2, "result": {"structuredContent": MODEL_JSON}})
    with mock.patch("shellsense.providers.mcp.requests.post", side_effect=[listing, answer]) as post:
        assert p.is_available()
        out = p.analyze(_input(env={"API_KEY": "sk-1234567890"}))
    call = post.call_args_list[1].kwargs["json"]
    assert call["method"] == "tools/call"
    assert call["params"]["name"] == "analyze_failure"
    assert call["params"]["arguments"]["context_window"]["env"] == {"API_KEY": "[REDACTED]"}
    assert out.provenance.provider == "mcp"
    assert len(out.suggestions) == 2


def test_mcp_text_content_and_rpc_error():
    p = MCPProvider({"server_url": "http://tools.local/rpc"}, safety=NO_REVIEW)
    text = _response(payload={"result": {"content": [{"type": "text", "text": json.dumps(MODEL_JSON)}]}})
    with mock.patch("shellsense.providers.mcp.requests.post", return_value=text):
        assert p.analyze(_input()).suggestions
    err = _response(payload={"error": {"code": -32601, "message": "no such tool"}})
    with mock.patch("shellsense.providers.mcp.requests.post", return_value=err):
        with pytest.raises(ProviderError, match="no such tool"):
            p.analyze(_input())


def test_mcp_unconfigured():
    p = MCPProvider({}, safety=NO_REVIEW)
    assert not p.is_available()
    with pytest.raises(ProviderUnavailable):
        p.analyze(_input())


def test_outputs_are_provider_contract_types():
    assert isinstance(MockProvider(safety=NO_REVIEW).analyze(_input()), MCPToolOutput)


def test_suggestions_carry_the_originating_command_time():
    ctx = AnalysisContext(command="grep", exit_code=2, stderr="boom", timestamp=1_000)
    p = MockProvider(safety=NO_REVIEW, cache=ResponseCache(ttl=60))
    first = p.analyze(MCPToolInput(context_window=ctx, error_summary=ErrorSummary.from_context(ctx)))
    assert [s.timestamp for s in first.suggestions] == [1_000]
    assert first.provenance.timestamp > 1_000

    later = ctx.model_copy(update={"timestamp": 2_000})
    second = p.analyze(MCPToolInput(context_window=later, error_summary=ErrorSummary.from_context(later)))
    assert p.calls == 1
    assert [s.timestamp for s in second.suggestions] == [2_000]
    assert second.provenance.timestamp == first.provenance.timestamp


# ---- malformed server answers ----

@pytest.mark.parametrize("payload", [["not", "an", "object"], "text", 42])
def test_mcp_non_object_json_is_a_provider_error(payload):
    p = MCPProvider({"server_url": "http://tools.local/rpc"}, safety=NO_REVIEW)
    with mock.patch("shellsense.providers.mcp.requests.post", return_value=_response(payload=payload)):
        assert not p.is_available()
        with pytest.raises(ProviderError):
            p.analyze(_input())
    odd_result = _response(payload={"result": ["nope"]})
    with mock.patch("shellsense.providers.mcp.requests.post", return_value=odd_result):
        assert not p.is_available()
        with pytest.raises(ProviderError):
            p.analyze(_input())


def test_ollama_non_object_json(monkeypatch):
    monkeypatch.delenv("OLLAMA_URL", raising=False)
    monkeypatch.delenv("OLLAMA_HOST", raising=False)
    p = OllamaProvider({}, safety=NO_REVIEW)
    with mock.patch("shellsense.providers.local_ollama.requests.get", return_value=_response(payload=["llama3.2"])):
        assert not p.is_available()
    with mock.patch("shellsense.providers.local_ollama.requests.post", return_value=_response(payload=[1, 2])):
        with pytest.raises(ProviderError):
            p.analyze(_input())


def test_anthropic_non_object_json(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    p = AnthropicProvider({}, safety=NO_REVIEW)
    with mock.patch("shellsense.providers.anthropic_client.requests.post", return_value=_response(payload=["x"])):
        with pytest.raises(ProviderError):
            p.analyze(_input())
