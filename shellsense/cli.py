# shellsense/cli.py
from __future__ import annotations

import argparse
import codecs
import logging
import os
import shlex
import subprocess
import sys
import threading
from datetime import datetime
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from .agent.agent import build_service, run_agent
from .agent.patterns import analyze_patterns
from .core.events import EVENT_TYPES, TerminalEvent, now_ms
from .core.hooks import SUPPORTED_SHELLS, hook_script
from .core.observer import Observer
from .core.spool import Spool
from .core.store import EventStore
from .status import (
    PublishedSuggestion,
    StatusPublisher,
    format_status,
    format_suggestion,
    read_status,
    read_suggestions,
    sort_for_display,
)
from .utils.config import AgentConfig, load_config, set_enabled
from .utils.env import load_env
from .utils.errors import ConfigInvalid, InvalidEvent, StoreUnavailable
from .utils.redact import Sanitizer

log = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

EXIT_OK = 0
EXIT_DISABLED = 1
EXIT_USAGE = 2
EXIT_NO_DATA = 3

DAY_MS = 24 * 60 * 60 * 1000


def _setup_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=verbose > 1, rich_tracebacks=True)],
    )


def _not_enabled() -> int:
    console.print("[yellow]Agent is not enabled.[/yellow] Run: shellsense agent enable")
    return EXIT_DISABLED


def _open_store(cfg: AgentConfig) -> EventStore:
    return EventStore(str(cfg.db_path))


def _fmt_ts(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S") if ms else "-"


# ---------- agent ----------

def _cmd_agent(args, cfg: AgentConfig) -> int:
    if args.action == "enable":
        cfg = set_enabled(True)
        StatusPublisher(cfg.status_path, cfg.suggestions_path).publish_idle()
        console.print("[green]Agent enabled.[/green] Start it with: shellsense agent run")
        return EXIT_OK
    if args.action == "disable":
        set_enabled(False)
        console.print("Agent disabled.")
        return EXIT_OK
    if args.action == "run":
        return run_agent(cfg, once=args.once)

    # status
    console.print(f"Enabled:  {'yes' if cfg.enabled else 'no'}")
    console.print(f"Provider: {cfg.llm.type if cfg.llm.enabled else 'none (heuristics only)'}")
    console.print(f"Home:     {cfg.home_path}")
    stats = _open_store(cfg).get_stats()
    console.print(f"Events:   {stats['total_events']} in {stats['sessions']} session(s)")
    console.print(f"Analyses: {stats['analyses']}")
    console.print(f"Status:   {format_status(read_status(cfg.status_path))}")
    return EXIT_OK if cfg.enabled else EXIT_DISABLED


# ---------- suggest ----------

def _print_suggestions(items: List[PublishedSuggestion]) -> None:
    for s in items:
        console.print(format_suggestion(s), markup=False, highlight=False)


def _cmd_suggest(args, cfg: AgentConfig) -> int:
    if not cfg.enabled:
        return _not_enabled()

    if args.action == "status":
        st = read_status(cfg.status_path)
        console.print(f"Status:        {format_status(st)}")
        console.print(f"Suggestions:   {st.suggestion_count}")
        console.print(f"High Priority: {st.high_priority_count}")
        if st.last_command:
            console.print(f"Last Command:  {st.last_command}", markup=False)
        return EXIT_OK

    if args.action == "top":
        items = sort_for_display(read_suggestions(cfg.suggestions_path))
        if not items:
            console.print("No suggestions")
            return EXIT_NO_DATA
        top = items[0]
        console.print(f"[{top.priority}] {top.title}", markup=False, highlight=False)
        return EXIT_OK

    if args.action == "patterns":
        items = analyze_patterns(_open_store(cfg), sanitizer=Sanitizer(cfg.llm.safety.extra_patterns))
        if not items:
            console.print("No command patterns yet")
            return EXIT_NO_DATA
        _print_suggestions([PublishedSuggestion.from_suggestion(s) for s in items])
        return EXIT_OK

    # last
    results = _open_store(cfg).latest_analyses(1)
    if not results or not results[0].suggestions:
        console.print("No suggestions for the last command")
        return EXIT_NO_DATA
    res = results[0]
    console.print(f"[bold]{escape(res.command)}[/bold]  [dim]({res.provenance.provider})[/dim]")
    _print_suggestions([PublishedSuggestion.from_suggestion(s) for s in res.suggestions])
    return EXIT_OK


# ---------- analyze ----------

def _interactive_reviewer(text: str) -> bool:
    err_console.rule("context to be sent")
    err_console.print(text, markup=False, highlight=False)
    return Confirm.ask("Send this to the provider?", default=False, console=err_console)


def _cmd_analyze(args, cfg: AgentConfig) -> int:
    store = _open_store(cfg)
    command_id = args.target
    if command_id == "last":
        command_id = store.last_command_id(failed_only=True) or store.last_command_id()
    if not command_id:
        console.print("No captured commands yet (is `shellsense agent run` running?)")
        return EXIT_NO_DATA

    reviewer = _interactive_reviewer if (not args.no_review and sys.stdin.isatty()) else None
    service = build_service(cfg, store=store, reviewer=reviewer)
    try:
        result = service.analyze(command_id)
    except InvalidEvent as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return EXIT_NO_DATA
    finally:
        service.shutdown(wait=True)

    console.print(f"[bold]{escape(result.command)}[/bold]  [dim]({result.provenance.provider})[/dim]")
    if result.provenance.fallback_reason:
        console.print(f"[dim]provider skipped: {result.provenance.fallback_reason}[/dim]", highlight=False)
    if not result.suggestions:
        console.print("No suggestions")
        return EXIT_NO_DATA
    _print_suggestions([PublishedSuggestion.from_suggestion(s) for s in result.suggestions])
    return EXIT_OK


# ---------- capture (called from shell hooks) ----------

def _split_line(line: str) -> List[str]:
    try:
        return shlex.split(line)
    except ValueError:
        return line.split()


def _observer(args, cfg: AgentConfig) -> Observer:
    return Observer(
        Spool(str(cfg.spool_path)),
        session_id=args.session or os.environ.get("SHELLSENSE_SESSION") or None,
        shell=args.shell,
        pane_id=os.environ.get("TMUX_PANE") or os.environ.get("ZELLIJ_PANE_ID"),
        sanitizer=Sanitizer(cfg.llm.safety.extra_patterns),
        chunk_size=cfg.chunk_size,
        redact=cfg.redact,
    )


def _cmd_capture(args, cfg: AgentConfig) -> int:
    if not (cfg.enabled and cfg.capture_events):
        return EXIT_DISABLED
    obs = _observer(args, cfg)

    if args.action == "session-start":
        print(obs.start_session(cwd=args.cwd, env=dict(os.environ)))
        return EXIT_OK
    if args.action == "session-end":
        obs.end_session(duration=args.duration)
        return EXIT_OK
    if args.action == "start":
        words = _split_line(args.line or "")
        if not words:
            return EXIT_USAGE
        env = dict(os.environ) if args.with_env else None
        print(obs.command_start(words[0], words[1:], cwd=args.cwd, env=env, pid=os.getppid()))
        return EXIT_OK
    if args.action == "output":
        obs.write_output(args.command_id, args.stream, sys.stdin.read())
        return EXIT_OK
    if args.action == "end":
        obs.exit_status(args.command_id, args.exit_code, duration=args.duration)
        return EXIT_OK
    return EXIT_USAGE


# ---------- run (captures output the hooks cannot see) ----------

def _exit_code(returncode: int) -> int:
    # killed by a signal: report it the way shells do
    return 128 - returncode if returncode < 0 else returncode


def _tee(src, sink, obs: Observer, command_id: str, stream: str, size: int, lock: threading.Lock) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    with src:
        for raw in iter(lambda: src.read1(size), b""):
            text = decoder.decode(raw)
            sink.write(text)
            sink.flush()
            if text:
                with lock:
                    obs.write_output(command_id, stream, text)
    rest = decoder.decode(b"", final=True)
    if rest:
        sink.write(rest)
        with lock:
            obs.write_output(command_id, stream, rest)


def _cmd_run(args, cfg: AgentConfig) -> int:
    argv = list(args.argv)
    if argv and argv[0] == "--":
        argv = argv[1:]
    if not argv:
        err_console.print("usage: shellsense run -- <command> [args...]")
        return EXIT_USAGE
    if not (cfg.enabled and cfg.capture_events):
        try:
            return _exit_code(subprocess.call(argv))
        except OSError as e:
            err_console.print(f"shellsense: {escape(argv[0])}: {escape(e.strerror or str(e))}")
            return 127

    obs = _observer(args, cfg)
    cid = obs.command_start(argv[0], argv[1:], cwd=os.getcwd(), pid=os.getpid())
    try:
        proc = subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        msg = f"shellsense: {argv[0]}: {e.strerror or e}\n"
        sys.stderr.write(msg)
        obs.write_output(cid, "stderr", msg)
        obs.exit_status(cid, 127)
        return 127

    lock = threading.Lock()
    readers = [
        threading.Thread(target=_tee, args=(proc.stdout, sys.stdout, obs, cid, "stdout", cfg.chunk_size, lock)),
        threading.Thread(target=_tee, args=(proc.stderr, sys.stderr, obs, cid, "stderr", cfg.chunk_size, lock)),
    ]
    for t in readers:
        t.start()
    try:
        code = _exit_code(proc.wait())
    except KeyboardInterrupt:
        proc.wait()
        code = _exit_code(proc.returncode)
    for t in readers:
        t.join()
    obs.exit_status(cid, code)
    return code


# ---------- events / clear ----------

def _event_detail(e: TerminalEvent) -> str:
    if e.type == "command_start":
        return " ".join([e.command, *e.args])
    if e.type in ("stdout_chunk", "stderr_chunk"):
        return f"#{e.chunk_index} {e.chunk[:60]!r}"
    if e.type == "exit_status":
        return f"exit {e.exit_code}"
    if e.type == "command_end":
        return f"{e.duration} ms"
    if e.type in ("session_start", "cwd_change"):
        return e.cwd
    if e.type == "env_change":
        return ", ".join(e.changed_keys)
    return ""


def _cmd_events(args, cfg: AgentConfig) -> int:
    events = _open_store(cfg).get_events(type=args.type, limit=args.limit)
    if not events:
        console.print("No events")
        return EXIT_NO_DATA
    t = Table(show_lines=False)
    t.add_column("time", style="dim")
    t.add_column("type", style="cyan")
    t.add_column("session", overflow="fold")
    t.add_column("detail", overflow="fold")
    for e in events:
        t.add_row(_fmt_ts(e.timestamp), e.type, e.session_id, _event_detail(e))
    console.print(t)
    return EXIT_OK


def _cmd_clear(args, cfg: AgentConfig) -> int:
    store = _open_store(cfg)
    if args.days is not None:
        n = store.clear_events(older_than=now_ms() - args.days * DAY_MS)
        console.print(f"Removed {n} event(s) older than {args.days} day(s)")
        return EXIT_OK
    n = store.clear_events()
    Spool(str(cfg.spool_path)).truncate()
    offset = cfg.home_path / "spool.offset"
    if offset.exists():
        offset.write_text("0")
    StatusPublisher(cfg.status_path, cfg.suggestions_path).publish_idle()
    console.print(f"Removed {n} event(s)")
    return EXIT_OK


# ---------- misc ----------

def _cmd_hook(args, cfg: AgentConfig) -> int:
    try:
        print(hook_script(args.shell), end="")
    except ValueError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        return EXIT_USAGE
    return EXIT_OK


def _cmd_doctor(args, cfg: AgentConfig) -> int:
    from .doctor import main as doctor_main
    return doctor_main(cfg)


def _cmd_watch(args, cfg: AgentConfig) -> int:
    from .ui.ui import run_ui
    run_ui(str(cfg.status_path), str(cfg.suggestions_path))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="shellsense", description="ambient shell failure analysis")
    p.add_argument("-v", "--verbose", action="count", default=0, help="more logging (-vv for debug)")
    sub = p.add_subparsers(dest="cmd", required=True)

    a = sub.add_parser("agent", help="enable, disable, inspect or run the background agent")
    a.add_argument("action", choices=["enable", "disable", "status", "run"])
    a.add_argument("--once", action="store_true", help="drain the capture spool once and exit")

    s = sub.add_parser("suggest", help="read the current suggestions")
    s.add_argument("action", choices=["status", "top", "last", "patterns"])

    an = sub.add_parser("analyze", help="analyze a captured command now")
    an.add_argument("target", nargs="?", default="last", help="'last' or a command id")
    an.add_argument("--no-review", action="store_true", help="never prompt; declines the provider when review is required")

    c = sub.add_parser("capture", help="record shell activity (used by the shell hooks)")
    c.add_argument("action", choices=["session-start", "session-end", "start", "output", "end"])
    c.add_argument("command_id", nargs="?", help="command id for output/end")
    c.add_argument("exit_code", nargs="?", type=int, default=0, help="exit code for end")
    c.add_argument("--session", default="")
    c.add_argument("--shell", choices=["bash", "zsh", "nushell", "unknown"], default=None)
    c.add_argument("--cwd", default=None)
    c.add_argument("--line", default=None, help="full command line for start")
    c.add_argument("--stream", choices=["stdout", "stderr"], default="stderr", help="stream for output (reads stdin)")
    c.add_argument("--duration", type=int, default=None, help="duration in ms")
    c.add_argument("--with-env", action="store_true", help="attach a sanitized env snapshot to start")

    r = sub.add_parser("run", help="run a command, showing and recording its output")
    r.add_argument("--session", default="")
    r.add_argument("--shell", choices=["bash", "zsh", "nushell", "unknown"], default=None)
    r.add_argument("argv", nargs=argparse.REMAINDER, help="the command to run, after --")

    e = sub.add_parser("events", help="list recent events")
    e.add_argument("--type", choices=list(EVENT_TYPES), default=None)
    e.add_argument("--limit", type=int, default=50)

    cl = sub.add_parser("clear", help="delete captured events")
    cl.add_argument("--days", type=int, default=None, help="only events older than N days")

    h = sub.add_parser("hook", help="print the shell hook to eval in your rc file")
    h.add_argument("shell", choices=list(SUPPORTED_SHELLS))

    sub.add_parser("doctor", help="check configuration, credentials and provider reachability")
    sub.add_parser("watch", help="live view of status and suggestions")
    return p


HANDLERS = {
    "agent": _cmd_agent,
    "suggest": _cmd_suggest,
    "analyze": _cmd_analyze,
    "capture": _cmd_capture,
    "run": _cmd_run,
    "events": _cmd_events,
    "clear": _cmd_clear,
    "hook": _cmd_hook,
    "doctor": _cmd_doctor,
    "watch": _cmd_watch,
}


def main(argv: Optional[List[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    _setup_logging(args.verbose)

    if args.cmd == "capture" and args.action in ("output", "end") and not args.command_id:
        p.error(f"capture {args.action} needs a command id")

    # Hydrate env from <home>/.env (does not overwrite existing real env)
    load_env()
    try:
        cfg = load_config()
    except ConfigInvalid as e:
        err_console.print(f"[red]config error:[/red] {e}")
        return EXIT_USAGE

    try:
        return HANDLERS[args.cmd](args, cfg)
    except StoreUnavailable as e:
        err_console.print(f"[red]storage unavailable:[/red] {e}")
        return EXIT_DISABLED
