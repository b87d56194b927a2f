# tests/test_patterns.py
from shellsense.agent.pipeline import AnalysisPipeline
from shellsense.agent.patterns import analyze_patterns, analyze_run, command_patterns
from shellsense.core.events import CommandEnd, CommandStart, ExitStatus
from shellsense.utils.schema import CommandRun


def _titles(suggestions):
    return [s.title for s in suggestions]


# ---- store joins ----

def test_command_run_joins_exit_code_and_duration(store, run_command):
    cid = run_command("make build", exit_code=2, duration=1200)
    run = store.command_run(cid)
    assert run.command == "make" and run.args == ["build"]
    assert run.exit_code == 2 and run.duration == 1200
    assert run.failed and not run.succeeded
    assert run.command_line == "make build"


def test_running_command_has_no_exit_code(store, observer):
    cid = observer.command_start("sleep", ["60"], cwd="/tmp")
    run = store.command_run(cid)
    assert run.exit_code is None and run.duration is None
    assert not run.failed and not run.succeeded
    assert store.command_run("evt_missing") is None


def test_command_runs_newest_first_and_filtered(store, run_command):
    first = run_command("git status")
    run_command("ls")
    last = run_command("git diff")
    assert [r.command_id for r in store.command_runs(command="git")] == [last, first]
    assert [r.command_id for r in store.command_runs(command="git", upto=first)] == [first]
    assert len(store.command_runs(limit=2)) == 2


def test_command_patterns_aggregate_per_executable():
    runs = [
        CommandRun(command_id="c3", command="pytest", args=["-x"], timestamp=3, exit_code=1, duration=4000),
        CommandRun(command_id="c2", command="pytest", args=["-x"], timestamp=2, exit_code=0, duration=2000),
        CommandRun(command_id="c1", command="pytest", args=["-k", "db"], timestamp=1, exit_code=0),
        CommandRun(command_id="c0", command="ls", timestamp=0, exit_code=0),
    ]
    patterns = command_patterns(runs)
    assert [p.command for p in patterns] == ["pytest", "ls"]
    p = patterns[0]
    assert p.frequency == 3
    assert abs(p.success_rate - 2 / 3) < 1e-9
    assert p.avg_duration == 3000
    assert p.last_used == 3
    assert p.common_args == ["-x", "-k db"]


# ---- single command ----

def test_repeated_failures_need_three_of_the_last_five(store, run_command):
    run_command("npm test", exit_code=1)
    second = run_command("npm test", exit_code=1)
    assert "Repeated Command Failures" not in _titles(analyze_run(store, second))

    third = run_command("npm test", exit_code=1)
    out = analyze_run(store, third)
    hit = next(s for s in out if s.title == "Repeated Command Failures")
    assert hit.priority == "high" and hit.type == "warning"
    assert hit.source == "patterns"
    assert hit.timestamp == store.command_run(third).timestamp


def test_old_failures_fall_out_of_the_window(store, run_command):
    for _ in range(3):
        run_command("npm test", exit_code=1)
    for _ in range(4):
        run_command("npm test", exit_code=0)
    cid = run_command("npm test", exit_code=1)
    assert "Repeated Command Failures" not in _titles(analyze_run(store, cid))


def test_slow_command_is_strictly_over_five_seconds(store, run_command):
    slow = run_command("cargo build", duration=6500)
    edge = run_command("cargo check", duration=5000)
    out = analyze_run(store, slow)
    hit = next(s for s in out if s.title == "Slow Command Execution")
    assert hit.type == "optimization" and "6.5s" in hit.description
    assert "Slow Command Execution" not in _titles(analyze_run(store, edge))


def test_common_arguments_for_a_bare_invocation(store, run_command):
    for _ in range(6):
        run_command("ls -la")
    cid = run_command("ls")
    hit = next(s for s in analyze_run(store, cid) if s.title == "Common Arguments")
    assert hit.actionable_snippet == "ls -la"
    assert hit.priority == "low"


def test_common_arguments_need_more_than_five_uses(store, run_command):
    for _ in range(4):
        run_command("ls -la")
    cid = run_command("ls")
    assert "Common Arguments" not in _titles(analyze_run(store, cid))


def test_similar_successful_command(store, run_command):
    run_command("git push origin main")
    run_command("git push")
    cid = run_command("git push origin mian", exit_code=1)
    hit = next(s for s in analyze_run(store, cid) if s.title == "Similar Successful Command")
    assert hit.actionable_snippet == "git push origin main"
    assert hit.type == "command"


def test_similar_command_needs_same_argument_count(store, run_command):
    run_command("git push")
    cid = run_command("git push origin mian", exit_code=1)
    assert "Similar Successful Command" not in _titles(analyze_run(store, cid))


def test_history_suggestions_scrub_secrets(store):
    token = "ghp_" + "a1B2c3D4e5" * 4
    start = CommandStart(session_id="s1", command="curl", args=["-u", token, "https://api.github.com"])
    store.save_event(start)
    store.save_event(ExitStatus(session_id="s1", command_id=start.id, exit_code=0, success=True))
    store.save_event(CommandEnd(session_id="s1", command_id=start.id, duration=9000))
    out = analyze_run(store, start.id)
    assert out
    assert all(token not in s.command for s in out)


# ---- whole history ----

def test_frequent_and_slow_patterns(store, run_command):
    for _ in range(5):
        run_command("git status")
    for _ in range(2):
        run_command("docker build .", duration=4000)
    titles = _titles(analyze_patterns(store))
    assert "Frequently Used Command: git" in titles
    assert "Frequently Used Command: docker" not in titles
    assert "Slow Command Pattern: docker" in titles
    assert "Low Success Rate" not in titles


def test_low_success_rate_needs_a_sample(store, run_command):
    for _ in range(3):
        run_command("make", exit_code=2)
    assert "Low Success Rate" not in _titles(analyze_patterns(store))

    run_command("make", exit_code=2)
    run_command("make")
    out = analyze_patterns(store)
    hit = next(s for s in out if s.title == "Low Success Rate")
    assert "20.0%" in hit.description


def test_no_history_no_patterns(store):
    assert analyze_patterns(store) == []


# ---- pipeline ----

def test_pipeline_adds_history_to_failure_analysis(store, run_command):
    for _ in range(3):
        cid = run_command("npm test", exit_code=1)
    with_history = AnalysisPipeline(store, repo_search=False, patterns=True)
    without = AnalysisPipeline(store, repo_search=False)
    try:
        assert "Repeated Command Failures" in _titles(with_history.run(cid).suggestions)
        assert "Repeated Command Failures" not in _titles(without.run(cid).suggestions)
    finally:
        with_history.close()
        without.close()


def test_run_patterns_only_for_commands_that_did_not_fail(store, run_command):
    ok = run_command("cargo build", duration=8000)
    failed = run_command("cargo build", exit_code=101, duration=8000)
    quick = run_command("true", duration=10)
    pipe = AnalysisPipeline(store, repo_search=False, patterns=True)
    try:
        result = pipe.run_patterns(ok)
        assert result.provenance.provider == "patterns"
        assert result.session_id == "session_test"
        assert "Slow Command Execution" in _titles(result.suggestions)
        assert pipe.run_patterns(failed) is None
        assert pipe.run_patterns(quick) is None
    finally:
        pipe.close()
