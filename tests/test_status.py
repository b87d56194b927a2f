# tests/test_status.py
import json
import os

from shellsense.status import (
    PublishedSuggestion,
    StatusData,
    StatusPublisher,
    format_status,
    format_suggestion,
    read_status,
    read_suggestions,
    sort_for_display,
)
from shellsense.utils.schema import AnalysisSuggestion


def _sugg(title, priority="medium", ts=1, confidence=0.5):
    return AnalysisSuggestion(title=title, priority=priority, timestamp=ts, confidence=confidence,
                              actionable_snippet="ls -la", command="grep foo bar.txt")


def test_publish_writes_camel_case_documents(tmp_path):
    pub = StatusPublisher(tmp_path / "status.json", tmp_path / "suggestions.json")
    st = pub.publish("issues_found", [_sugg("a", "high"), _sugg("b")], last_command="grep foo bar.txt")
    assert st.high_priority_count == 1

    status = json.loads((tmp_path / "status.json").read_text())
    assert status["status"] == "issues_found"
    assert status["suggestionCount"] == 2
    assert status["highPriorityCount"] == 1
    assert status["lastCommand"] == "grep foo bar.txt"

    doc = json.loads((tmp_path / "suggestions.json").read_text())
    assert [s["title"] for s in doc["suggestions"]] == ["a", "b"]
    assert doc["suggestions"][0]["actionableSnippet"] == "ls -la"


def test_publish_leaves_no_temp_files(tmp_path):
    pub = StatusPublisher(tmp_path / "status.json", tmp_path / "suggestions.json")
    for _ in range(3):
        pub.publish("analyzing", [_sugg("x")])
    pub.publish_idle()
    assert sorted(os.listdir(tmp_path)) == ["status.json", "suggestions.json"]
    assert read_status(tmp_path / "status.json").status == "idle"
    assert read_suggestions(tmp_path / "suggestions.json") == []


def test_missing_or_garbage_files_read_as_nothing(tmp_path):
    missing = read_status(tmp_path / "nope.json")
    assert (missing.status, missing.suggestion_count, missing.high_priority_count) == ("idle", 0, 0)
    assert read_suggestions(tmp_path / "nope.json") == []
    bad = tmp_path / "status.json"
    bad.write_text("{not json")
    assert read_status(bad).status == "idle"
    assert read_status(bad).suggestion_count == 0
    half = tmp_path / "suggestions.json"
    half.write_text('{"suggestions": [{"title": "x", "prio')
    assert read_suggestions(half) == []


def test_sort_for_display_priority_then_recency():
    items = [
        PublishedSuggestion(title="old-high", priority="high", timestamp=1),
        PublishedSuggestion(title="new-low", priority="low", timestamp=9),
        PublishedSuggestion(title="new-high", priority="high", timestamp=5),
    ]
    assert [s.title for s in sort_for_display(items)] == ["new-high", "old-high", "new-low"]


def test_format_status():
    assert format_status(StatusData(status="idle")) == "● idle"
    assert format_status(StatusData(status="analyzing")) == "⟳ analyzing"
    assert format_status(StatusData(status="issues_found", suggestion_count=3, high_priority_count=1)) == "⚠ 1 issue"
    assert format_status(StatusData(status="issues_found", suggestion_count=2)) == "⚠ 2 issues"


def test_format_suggestion():
    text = format_suggestion(PublishedSuggestion.from_suggestion(_sugg("Fix it", "high")))
    assert text.startswith("[high] !! Fix it")
    assert "   > ls -la" in text
    assert "Command: grep foo bar.txt" in text
