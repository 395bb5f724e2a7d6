#!/usr/bin/env python3
"""Interactive DevQuest shell driving the in-memory filesystem and git engine."""

from __future__ import annotations

import argparse
import datetime as _dt
import fnmatch
import logging
import os
import readline
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from devquest.command_parser import ParsedCommand, parse_line
from devquest.filesystem import (
    FileSystemError,
    IsADirectoryFsError,
    NoSuchFileError,
    chmod as chmod_node,
    find as find_nodes,
    iter_files,
    list_directory,
    make_directory,
    normalize_path,
    read_file,
    remove,
    resolve_path,
    touch as touch_node,
    write_file,
)
from devquest.git_engine import GitEngine, Transition, record_removal, record_write
from devquest.replay import SPEEDS, ReplayController, ReplayError, ReplayFrame
from devquest.results import OutputKind, OutputLine
from devquest.session_store import CommandLedger, SessionStoreError, load_session, save_session
from devquest.state import DEFAULT_CWD, SessionState, initial_state

REPLAY_LOCKED_MESSAGE = "Replay in progress; live input is disabled."

# ---------------------------------------------------------------------------
# Command invocation/result types
# ---------------------------------------------------------------------------


@dataclass
class CommandInvocation:
    name: str
    args: List[str]
    state: SessionState
    stdin: Optional[str] = None


@dataclass
class CommandResult:
    text: str = ""
    classification: OutputKind = OutputKind.SUCCESS
    lines: List[OutputLine] = field(default_factory=list)
    state: Optional[SessionState] = None
    audit: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.classification is not OutputKind.ERROR

    @property
    def status(self) -> int:
        return 0 if self.ok else 1


Handler = Callable[["ShellSession", CommandInvocation], CommandResult]


@dataclass
class Command:
    name: str
    summary: str
    usage: str
    handler: Handler
    long_help: Optional[str] = None
    is_filter: bool = False


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: Dict[str, Command] = {}

    def register(self, command: Command) -> None:
        self._commands[command.name] = command

    def get(self, name: str) -> Optional[Command]:
        return self._commands.get(name)

    def names(self) -> List[str]:
        return sorted(self._commands.keys())

    def values(self) -> Iterable[Command]:
        return self._commands.values()


def _error(text: str, state: Optional[SessionState] = None) -> CommandResult:
    return CommandResult(text=text, classification=OutputKind.ERROR, state=state)


def _usage_error(message: str) -> CommandResult:
    return _error(message)


def _from_transition(transition: Transition) -> CommandResult:
    return CommandResult(
        text=transition.text,
        classification=transition.kind,
        lines=list(transition.lines),
        state=transition.state,
    )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


Observer = Callable[[str, CommandResult], None]


class ShellSession:
    def __init__(
        self,
        state: Optional[SessionState] = None,
        *,
        clock: Callable[[], float] = time.time,
        ledger: Optional[CommandLedger] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        environ = os.environ if environ is None else environ
        replay_speed = 1
        env_speed = environ.get("DEVQUEST_REPLAY_SPEED")
        if env_speed:
            try:
                parsed_speed = int(env_speed)
                if parsed_speed in SPEEDS:
                    replay_speed = parsed_speed
            except ValueError:
                pass
        self.config: Dict[str, Any] = {
            "user": environ.get("DEVQUEST_USER") or "user",
            "hostname": environ.get("DEVQUEST_HOSTNAME") or "devquest-vm",
            "author": environ.get("DEVQUEST_AUTHOR") or "User",
            "replay_speed": replay_speed,
        }
        self.clock = clock
        self.registry = CommandRegistry()
        for definition in builtin_commands():
            self.registry.register(definition)
        self.engine = GitEngine(clock=clock, author=self.config["author"])
        self.ledger = ledger
        self.replay: Optional[ReplayController] = None
        self._observers: List[Observer] = []
        self._lock = threading.RLock()
        logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s: %(message)s")
        self.logger = logging.getLogger("devquest.shell")

        if state is None:
            state = initial_state(now=clock())
        self._seed_env(state)
        self._initial = self._replay_baseline(state)
        self.state = state

    def _seed_env(self, state: SessionState) -> None:
        if not state.env:
            state.env = {"USER": self.config["user"], "HOME": f"/home/{self.config['user']}"}

    def _replay_baseline(self, state: SessionState) -> SessionState:
        """Snapshot that replays of *state*'s history start from.

        A state that already carries history is the result of those commands,
        so its history is replayed against a fresh machine instead.
        """

        if state.command_history:
            baseline = initial_state(now=self.clock())
            self._seed_env(baseline)
            return baseline
        baseline = state.clone()
        baseline.last_output = ""
        return baseline

    # -------------------- registry helpers --------------------
    def register(self, command: Command) -> None:
        self.registry.register(command)

    def subscribe(self, observer: Observer) -> None:
        """Register a fire-and-forget observer of executed commands."""

        self._observers.append(observer)

    # -------------------- execution ---------------------------
    def execute(self, invocation: CommandInvocation) -> CommandResult:
        command = self.registry.get(invocation.name)
        if not command:
            return _error(f"Command not found: {invocation.name}", invocation.state)
        try:
            result = command.handler(self, invocation)
        except FileSystemError as exc:
            result = _error(f"{invocation.name}: {exc}")
        if result.state is None:
            result.state = invocation.state
        result.audit.setdefault("command", invocation.name)
        result.audit.setdefault("args", list(invocation.args))
        result.audit.setdefault("classification", result.classification.value)
        return result

    def _run_parsed(self, parsed: ParsedCommand, state: SessionState) -> CommandResult:
        working = state.clone()
        result = self.execute(CommandInvocation(parsed.command, list(parsed.args), working))
        if not result.ok:
            result.state = state
            return result

        if parsed.pipeline:
            name, args = parsed.pipeline[0], parsed.pipeline[1:]
            command = self.registry.get(name)
            if command is None or not command.is_filter:
                filters = ", ".join(c.name for c in self.registry.values() if c.is_filter)
                return _error(f"{name}: pipes are only supported into: {filters}", state)
            piped = self.execute(CommandInvocation(name, args, result.state or working, stdin=result.text))
            if not piped.ok:
                piped.state = state
                return piped
            result = piped

        if parsed.redirect is not None:
            target_state = result.state or working
            target = parsed.redirect.target
            try:
                write_file(
                    target_state.file_system,
                    target,
                    result.text,
                    target_state.cwd,
                    append=parsed.redirect.append,
                    now=self.clock(),
                )
            except IsADirectoryFsError:
                return _error(f"bash: {target}: Is a directory", state)
            except FileSystemError:
                return _error(f"bash: {target}: No such file or directory", state)
            record_write(target_state, normalize_path(target, target_state.cwd))
            result = CommandResult(state=target_state, audit=result.audit)
        return result

    def evaluate(self, state: SessionState, line: str) -> CommandResult:
        """Run *line* against *state* without touching the session's snapshot."""

        parsed = parse_line(line, state.env)
        if parsed.error is not None:
            result = _error(parsed.error, state)
        elif parsed.is_empty:
            result = CommandResult(state=state)
        else:
            result = self._run_parsed(parsed, state)
        next_state = result.state if result.state is not None and result.state is not state else state.clone()
        if line.strip():
            next_state.command_history.append(line.strip())
        next_state.last_output = result.text
        result.state = next_state
        return result

    # -------------------- line execution ----------------------
    def run_line(self, line: str) -> CommandResult:
        with self._lock:
            if self.replay is not None:
                if self.replay.active:
                    return _error(REPLAY_LOCKED_MESSAGE, self.state)
                self._end_replay()
            result = self.evaluate(self.state, line)
            self.state = result.state
            if line.strip():
                self._audit(line.strip(), result)
                self._notify(line.strip(), result)
            return result

    def _audit(self, line: str, result: CommandResult) -> None:
        if result.classification is OutputKind.ERROR:
            self.logger.debug("Command failed: %s -> %s", line, result.text)
        if self.ledger is None:
            return
        try:
            event = self.ledger.record(line, result.classification.value, cwd=self.state.cwd)
        except SessionStoreError as exc:
            self.logger.error("Failed to record command in ledger: %s", exc)
            return
        result.audit["event_id"] = event["event_id"]

    def _notify(self, line: str, result: CommandResult) -> None:
        for observer in list(self._observers):

            def target(callback: Observer = observer) -> None:
                try:
                    callback(line, result)
                except Exception as exc:  # noqa: BLE001
                    self.logger.error("Observer failed for %r: %s", line, exc)

            threading.Thread(target=target, daemon=True).start()

    # -------------------- task verification -------------------
    def check(self, predicate: Callable[[SessionState], bool]) -> bool:
        """Evaluate a task predicate against a copy of the current snapshot."""

        with self._lock:
            snapshot = self.state.clone()
        return bool(predicate(snapshot))

    # -------------------- editor integration ------------------
    def load_file(self, path: str) -> str:
        """Content an editor should open; new files start empty."""

        with self._lock:
            resolution = resolve_path(self.state.file_system, path, self.state.cwd)
            if resolution.node is None:
                return ""
            if resolution.node.is_directory:
                raise IsADirectoryFsError(path)
            return resolution.node.content or ""

    def save_file(self, path: str, content: str) -> CommandResult:
        with self._lock:
            if self.replay is not None and self.replay.active:
                return _error(REPLAY_LOCKED_MESSAGE, self.state)
            working = self.state.clone()
            try:
                write_file(working.file_system, path, content, working.cwd, now=self.clock())
            except FileSystemError as exc:
                return _error(f"{path}: {exc.reason}", self.state)
            record_write(working, normalize_path(path, working.cwd))
            self.state = working
            self.logger.info("Saved %s", normalize_path(path, working.cwd))
            return CommandResult(state=working)

    # -------------------- replay ------------------------------
    def start_replay(self, commands: Optional[Sequence[str]] = None, *, speed: Optional[int] = None) -> ReplayController:
        with self._lock:
            if self.replay is not None and self.replay.active:
                raise ReplayError("A replay is already running")
            recorded = list(self.state.command_history if commands is None else commands)
            if not recorded:
                raise ReplayError("No commands to replay")

            def finish(controller: ReplayController) -> None:
                with self._lock:
                    final = controller.state
                    final.command_history = list(recorded)
                    self.state = final
                    self._end_replay()

            controller = ReplayController(
                recorded,
                self._initial.clone(),
                self.evaluate,
                speed=speed or self.config["replay_speed"],
                on_finish=finish,
            )
            self.replay = controller
            if self.ledger is not None:
                self.ledger.set_read_only(True)
            controller.start()
            return controller

    def _end_replay(self) -> None:
        self.replay = None
        if self.ledger is not None:
            self.ledger.set_read_only(False)

    # -------------------- persistence -------------------------
    def save(self, path: Path) -> Path:
        with self._lock:
            return save_session(self.state, path)

    def restore(self, path: Path) -> None:
        state = load_session(path)
        with self._lock:
            self._seed_env(state)
            self._initial = self._replay_baseline(state)
            self.state = state

    def prompt(self) -> str:
        return f"{self.config['user']}@{self.config['hostname']}:{self.state.cwd}$ "


# ---------------------------------------------------------------------------
# Built-in command implementations
# ---------------------------------------------------------------------------


def command(name: str, summary: str, usage: str, **kwargs: Any) -> Callable[[Handler], Handler]:
    long_help = kwargs.pop("long_help", None)
    is_filter = kwargs.pop("is_filter", False)

    def decorator(func: Handler) -> Handler:
        func.__command_definition__ = Command(  # type: ignore[attr-defined]
            name=name,
            summary=summary,
            usage=usage,
            handler=func,
            long_help=long_help,
            is_filter=is_filter,
        )
        return func

    return decorator


def builtin_commands() -> List[Command]:
    return [
        obj.__command_definition__
        for obj in globals().values()
        if callable(obj) and hasattr(obj, "__command_definition__")
    ]


def _split_flags(args: Sequence[str], known: str) -> tuple:
    """Separate single-letter flags (``-la``) from operands."""

    flags = set()
    operands: List[str] = []
    for arg in args:
        if arg.startswith("-") and len(arg) > 1 and not arg[1:].isdigit() and all(ch in known for ch in arg[1:]):
            flags.update(arg[1:])
        else:
            operands.append(arg)
    return flags, operands


def _content_lines(text: str) -> List[str]:
    return text.split("\n") if text else []


def _read_input(invocation: CommandInvocation, target: Optional[str]) -> str:
    state = invocation.state
    if target is not None:
        return read_file(state.file_system, target, state.cwd)
    return invocation.stdin or ""


def _line_count(args: List[str], default: int = 10) -> tuple:
    """Parse ``-n N`` / ``-N`` and return ``(count, remaining_args)``."""

    count = default
    remaining: List[str] = []
    index = 0
    while index < len(args):
        arg = args[index]
        if arg == "-n" and index + 1 < len(args):
            count = int(args[index + 1])
            index += 2
            continue
        if arg.startswith("-n") and arg[2:].isdigit():
            count = int(arg[2:])
        elif arg.startswith("-") and arg[1:].isdigit():
            count = int(arg[1:])
        else:
            remaining.append(arg)
        index += 1
    return count, remaining


# -------------------- system commands -----------------------


@command(
    name="help",
    summary="List available commands",
    usage="help [command]",
)
def help_command(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    if not invocation.args:
        entries = [f"{name:10s} - {shell.registry.get(name).summary}" for name in shell.registry.names()]
        return CommandResult(text="\n".join(entries), classification=OutputKind.INFO)
    name = invocation.args[0]
    definition = shell.registry.get(name)
    if not definition:
        return _error(f"help: no help topics match '{name}'")
    body = f"{name}\n{'-' * len(name)}\n{definition.long_help or definition.summary}\nUsage: {definition.usage}"
    return CommandResult(text=body, classification=OutputKind.INFO)


@command(
    name="clear",
    summary="Clear the terminal",
    usage="clear",
)
def clear(shell: ShellSession, _: CommandInvocation) -> CommandResult:
    return CommandResult(text="\x1bc")


@command(
    name="history",
    summary="Show the commands entered in this session",
    usage="history",
)
def history(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    entries = [f"{index:>5}  {line}" for index, line in enumerate(invocation.state.command_history, start=1)]
    return CommandResult(text="\n".join(entries))


@command(
    name="whoami",
    summary="Show current user",
    usage="whoami",
)
def whoami(shell: ShellSession, _: CommandInvocation) -> CommandResult:
    return CommandResult(text=shell.config["user"])


@command(
    name="hostname",
    summary="Show the machine name",
    usage="hostname",
)
def hostname(shell: ShellSession, _: CommandInvocation) -> CommandResult:
    return CommandResult(text=shell.config["hostname"])


@command(
    name="date",
    summary="Show current time",
    usage="date",
)
def date(shell: ShellSession, _: CommandInvocation) -> CommandResult:
    moment = _dt.datetime.fromtimestamp(shell.clock(), _dt.timezone.utc)
    return CommandResult(text=moment.strftime("%a %b %d %H:%M:%S UTC %Y"))


@command(
    name="env",
    summary="List environment variables",
    usage="env",
)
def env(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    variables = dict(invocation.state.env)
    variables.setdefault("PWD", invocation.state.cwd)
    lines = [f"{key}={value}" for key, value in sorted(variables.items())]
    return CommandResult(text="\n".join(lines))


@command(
    name="export",
    summary="Set an environment variable",
    usage="export KEY=VALUE",
)
def export(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    if not invocation.args:
        return env(shell, invocation)
    for pair in invocation.args:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            return _usage_error("export: invalid format. Use KEY=VALUE")
        invocation.state.env[key] = value
    return CommandResult()


@command(
    name="echo",
    summary="Print arguments",
    usage="echo [text...]",
)
def echo(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    return CommandResult(text=" ".join(invocation.args))


# -------------------- filesystem commands -------------------


def _format_long(name: str, node: Any) -> str:
    metadata = node.metadata
    links = 2 if node.is_directory else 1
    size = metadata.size if node.is_directory else len(node.content or "")
    moment = _dt.datetime.fromtimestamp(metadata.modified_at, _dt.timezone.utc)
    stamp = f"{moment:%b} {moment.day:>2} {moment:%H:%M}"
    return f"{metadata.permissions:<10} {links} {metadata.owner:<8} {metadata.group:<8} {size:>5} {stamp} {name}"


@command(
    name="pwd",
    summary="Print working directory",
    usage="pwd",
)
def pwd(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    return CommandResult(text=invocation.state.cwd)


@command(
    name="ls",
    summary="List directory contents",
    usage="ls [-l] [-a] [path]",
)
def ls(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    state = invocation.state
    flags, operands = _split_flags(invocation.args, "la")
    target = operands[0] if operands else "."
    try:
        entries = list_directory(state.file_system, target, state.cwd)
    except NoSuchFileError:
        return _error(f"ls: cannot access '{target}': No such file or directory")
    if "a" not in flags:
        entries = [(name, node) for name, node in entries if not name.startswith(".")]
    if "l" not in flags:
        return CommandResult(text="  ".join(name for name, _ in entries))
    rows = [_format_long(name, node) for name, node in entries]
    node = resolve_path(state.file_system, target, state.cwd).node
    if node is not None and node.is_file:
        return CommandResult(text="\n".join(rows))
    return CommandResult(text="\n".join([f"total {len(rows)}", *rows]))


@command(
    name="cd",
    summary="Change directory",
    usage="cd [path]",
)
def cd(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    state = invocation.state
    if invocation.args:
        target = invocation.args[0]
    elif state.git.initialized:
        target = state.git.work_tree
    else:
        target = DEFAULT_CWD
    node = resolve_path(state.file_system, target, state.cwd).node
    if node is None:
        return _error(f"cd: {target}: No such file or directory")
    if not node.is_directory:
        return _error(f"cd: {target}: Not a directory")
    state.cwd = normalize_path(target, state.cwd)
    return CommandResult()


@command(
    name="mkdir",
    summary="Create directory",
    usage="mkdir [-p] <path>...",
)
def mkdir(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    state = invocation.state
    flags, operands = _split_flags(invocation.args, "p")
    if not operands:
        return _usage_error("mkdir: missing operand")
    for target in operands:
        try:
            make_directory(state.file_system, target, state.cwd, parents="p" in flags, now=shell.clock())
        except FileSystemError as exc:
            return _error(f"mkdir: cannot create directory '{target}': {exc.reason}")
    return CommandResult()


@command(
    name="touch",
    summary="Create empty file or update its timestamp",
    usage="touch <path>...",
)
def touch(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    state = invocation.state
    if not invocation.args:
        return _usage_error("touch: missing file operand")
    for target in invocation.args:
        try:
            touch_node(state.file_system, target, state.cwd, now=shell.clock())
        except FileSystemError:
            return _error(f"touch: cannot touch '{target}': No such file or directory")
        record_write(state, normalize_path(target, state.cwd))
    return CommandResult()


@command(
    name="rm",
    summary="Remove files or directories",
    usage="rm [-r] [-f] <path>...",
)
def rm(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    state = invocation.state
    flags, operands = _split_flags(invocation.args, "rRf")
    if not operands:
        return _usage_error("rm: missing operand")
    recursive = bool(flags & {"r", "R"})
    for target in operands:
        absolute = normalize_path(target, state.cwd)
        try:
            removed = remove(state.file_system, target, state.cwd, recursive=recursive)
        except NoSuchFileError:
            if "f" in flags:
                continue
            return _error(f"rm: cannot remove '{target}': No such file or directory")
        except IsADirectoryFsError:
            return _error(f"rm: cannot remove '{target}': Is a directory")
        if removed.is_directory:
            record_removal(state, [f"{absolute.rstrip('/')}/{rel}" for rel, _ in iter_files(removed)])
        else:
            record_removal(state, [absolute])
    return CommandResult()


@command(
    name="cat",
    summary="Print file contents",
    usage="cat [file]...",
)
def cat(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    if not invocation.args:
        if invocation.stdin is None:
            return _usage_error("cat: missing operand")
        return CommandResult(text=invocation.stdin)
    state = invocation.state
    chunks = [read_file(state.file_system, target, state.cwd) for target in invocation.args]
    return CommandResult(text="\n".join(chunks))


@command(
    name="chmod",
    summary="Change file permissions",
    usage="chmod <mode> <path>",
)
def chmod(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    if len(invocation.args) < 2:
        return _usage_error("chmod: missing operand")
    mode, target = invocation.args[0], invocation.args[1]
    state = invocation.state
    try:
        chmod_node(state.file_system, mode, target, state.cwd, now=shell.clock())
    except NoSuchFileError:
        return _error(f"chmod: cannot access '{target}': No such file or directory")
    except ValueError as exc:
        return _error(f"chmod: {exc}")
    return CommandResult()


@command(
    name="find",
    summary="Search for files by name",
    usage="find [path] [-name pattern]",
)
def find(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    args = list(invocation.args)
    pattern = None
    if "-name" in args:
        index = args.index("-name")
        if index + 1 >= len(args):
            return _usage_error("find: missing argument to `-name'")
        pattern = args[index + 1]
        del args[index : index + 2]
    search_path = args[0] if args else "."
    state = invocation.state
    try:
        matches = find_nodes(state.file_system, search_path, state.cwd, pattern)
    except NoSuchFileError:
        return _error(f"find: '{search_path}': No such file or directory")
    if pattern is None or fnmatch.fnmatchcase(search_path.rstrip("/").rsplit("/", 1)[-1], pattern):
        matches = [search_path, *matches]
    return CommandResult(text="\n".join(matches))


# -------------------- text filters --------------------------


@command(
    name="grep",
    summary="Print lines containing a pattern",
    usage="grep [-i] [-v] [-c] <pattern> [file]",
    is_filter=True,
)
def grep(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    flags, operands = _split_flags(invocation.args, "ivc")
    if not operands:
        return _usage_error("grep: missing pattern")
    pattern = operands[0]
    target = operands[1] if len(operands) > 1 else None
    if target is None and invocation.stdin is None:
        return _usage_error("grep: no input file specified")
    try:
        text = _read_input(invocation, target)
    except NoSuchFileError:
        return _error(f"grep: {target}: No such file or directory")
    except IsADirectoryFsError:
        return _error(f"grep: {target}: Is a directory")
    needle = pattern.lower() if "i" in flags else pattern

    def matches(line: str) -> bool:
        found = needle in (line.lower() if "i" in flags else line)
        return not found if "v" in flags else found

    selected = [line for line in _content_lines(text) if matches(line)]
    if "c" in flags:
        return CommandResult(text=str(len(selected)))
    return CommandResult(text="\n".join(selected))


@command(
    name="head",
    summary="Print the first lines of input",
    usage="head [-n N] [file]",
    is_filter=True,
)
def head(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    try:
        count, operands = _line_count(invocation.args)
    except ValueError:
        return _usage_error("head: invalid number of lines")
    if not operands and invocation.stdin is None:
        return _usage_error("head: missing file operand")
    text = _read_input(invocation, operands[0] if operands else None)
    return CommandResult(text="\n".join(_content_lines(text)[: max(count, 0)]))


@command(
    name="tail",
    summary="Print the last lines of input",
    usage="tail [-n N] [file]",
    is_filter=True,
)
def tail(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    try:
        count, operands = _line_count(invocation.args)
    except ValueError:
        return _usage_error("tail: invalid number of lines")
    if not operands and invocation.stdin is None:
        return _usage_error("tail: missing file operand")
    text = _read_input(invocation, operands[0] if operands else None)
    lines = _content_lines(text)
    return CommandResult(text="\n".join(lines[-count:] if count > 0 else []))


@command(
    name="wc",
    summary="Count lines, words and characters",
    usage="wc [-l] [-w] [-c] [file]",
    is_filter=True,
)
def wc(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    flags, operands = _split_flags(invocation.args, "lwc")
    if not operands and invocation.stdin is None:
        return _usage_error("wc: missing file operand")
    target = operands[0] if operands else None
    text = _read_input(invocation, target)
    counts = {"l": len(_content_lines(text)), "w": len(text.split()), "c": len(text)}
    selected = [str(counts[key]) for key in "lwc" if key in flags] or [str(counts[key]) for key in "lwc"]
    if target is not None:
        selected.append(target)
    return CommandResult(text=" ".join(selected))


@command(
    name="sort",
    summary="Sort lines of input",
    usage="sort [-r] [file]",
    is_filter=True,
)
def sort(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    flags, operands = _split_flags(invocation.args, "r")
    if not operands and invocation.stdin is None:
        return _usage_error("sort: missing file operand")
    text = _read_input(invocation, operands[0] if operands else None)
    return CommandResult(text="\n".join(sorted(_content_lines(text), reverse="r" in flags)))


# -------------------- git -----------------------------------


GitHandler = Callable[[ShellSession, SessionState, List[str]], Transition]
_GIT_SUBCOMMANDS: Dict[str, GitHandler] = {}


def git_subcommand(*names: str) -> Callable[[GitHandler], GitHandler]:
    def decorator(func: GitHandler) -> GitHandler:
        for name in names:
            _GIT_SUBCOMMANDS[name] = func
        return func

    return decorator


def _info(state: SessionState, text: str) -> Transition:
    return Transition(state=state, text=text, kind=OutputKind.INFO)


def _option_value(args: List[str], *names: str) -> tuple:
    """Pop ``--name value`` / ``--name=value`` / ``-xVALUE`` from *args*."""

    remaining: List[str] = []
    value: Optional[str] = None
    found = False
    index = 0
    while index < len(args):
        arg = args[index]
        matched = next((name for name in names if arg == name), None)
        if matched is not None:
            found = True
            value = args[index + 1] if index + 1 < len(args) else None
            index += 2
            continue
        prefixed = next((name for name in names if name.startswith("--") and arg.startswith(name + "=")), None)
        if prefixed is not None:
            found = True
            value = arg[len(prefixed) + 1 :]
        else:
            remaining.append(arg)
        index += 1
    return found, value, remaining


@git_subcommand("init")
def _git_init(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    return shell.engine.init(state)


@git_subcommand("status")
def _git_status(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    return shell.engine.status(state)


@git_subcommand("add")
def _git_add(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    return shell.engine.add(state, [arg for arg in args if arg != "--"])


@git_subcommand("commit")
def _git_commit(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    stage_all = False
    remaining: List[str] = []
    for arg in args:
        if arg in ("-a", "--all"):
            stage_all = True
        elif arg == "-am":
            stage_all = True
            remaining.append("-m")
        else:
            remaining.append(arg)
    _, message, _ = _option_value(remaining, "-m", "--message")
    return shell.engine.commit(state, message, stage_all=stage_all)


@git_subcommand("branch")
def _git_branch(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    if not args or args[0] in ("--list", "-a", "--all", "-l"):
        return shell.engine.branches(state)
    flag = args[0]
    if flag in ("-d", "-D", "--delete"):
        if len(args) < 2:
            return Transition(state=state, text="fatal: branch name required", kind=OutputKind.ERROR)
        return shell.engine.delete_branch(state, args[1])
    if flag in ("-m", "-M", "--move"):
        force = flag == "-M"
        if len(args) == 2:
            return shell.engine.rename_branch(state, args[1], force=force)
        if len(args) >= 3:
            return shell.engine.rename_branch(state, args[2], args[1], force=force)
        return Transition(state=state, text="fatal: branch name required", kind=OutputKind.ERROR)
    return shell.engine.create_branch(state, args[0], args[1] if len(args) > 1 else None)


@git_subcommand("checkout")
def _git_checkout(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    if "--" in args:
        return shell.engine.restore(state, args[args.index("--") + 1 :])
    if args and args[0] in ("-b", "-B"):
        return shell.engine.checkout(state, args[1] if len(args) > 1 else None, create=True)
    return shell.engine.checkout(state, args[0] if args else None)


@git_subcommand("switch")
def _git_switch(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    if args and args[0] in ("-c", "-C", "--create"):
        return shell.engine.checkout(state, args[1] if len(args) > 1 else None, create=True, switch=True)
    return shell.engine.checkout(state, args[0] if args else None, switch=True)


@git_subcommand("merge")
def _git_merge(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    return shell.engine.merge(state, args[0] if args else None)


@git_subcommand("stash")
def _git_stash(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    action = args[0] if args else "push"
    rest = args[1:]
    if action.startswith("-"):
        action, rest = "push", args
    if action == "push":
        _, message, _ = _option_value(rest, "-m", "--message")
        return shell.engine.stash_push(state, message)
    if action == "save":
        return shell.engine.stash_push(state, " ".join(rest) or None)
    if action == "pop":
        return shell.engine.stash_apply(state, drop=True)
    if action == "apply":
        return shell.engine.stash_apply(state)
    if action == "list":
        return shell.engine.stash_list(state)
    if action == "drop":
        return shell.engine.stash_drop(state)
    if action == "clear":
        return shell.engine.stash_clear(state)
    return _info(state, "usage: git stash [push [-m <message>] | save | pop | apply | list | drop | clear]")


@git_subcommand("reset")
def _git_reset(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    mode: Optional[str] = None
    operands: List[str] = []
    for arg in args:
        if arg in ("--soft", "--mixed", "--hard"):
            mode = arg[2:]
        elif arg != "--":
            operands.append(arg)
    if "--" in args:
        return shell.engine.unstage(state, args[args.index("--") + 1 :])
    if not operands:
        if mode is None and state.git.head_commit_id() is None:
            return shell.engine.unstage(state, list(state.git.staging))
        return shell.engine.reset(state, "HEAD", mode=mode or "mixed")
    ref = operands[0]
    resolves = shell.engine.resolve_revision(state, ref) is not None
    if mode is None and (len(operands) > 1 or not resolves):
        paths = operands[1:] if resolves else operands
        return shell.engine.unstage(state, paths)
    return shell.engine.reset(state, ref, mode=mode or "mixed")


@git_subcommand("restore")
def _git_restore(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    staged = "--staged" in args or "-S" in args
    paths = [arg for arg in args if arg not in ("--staged", "-S", "--worktree", "-W", "--")]
    return shell.engine.restore(state, paths, staged=staged)


@git_subcommand("revert")
def _git_revert(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    operands = [arg for arg in args if not arg.startswith("-")]
    return shell.engine.revert(state, operands[0] if operands else None)


@git_subcommand("remote")
def _git_remote(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    if not args:
        return shell.engine.remotes(state)
    if args[0] in ("-v", "--verbose"):
        return shell.engine.remotes(state, verbose=True)
    if args[0] == "add" and len(args) >= 2:
        return shell.engine.remote_add(state, args[1], args[2] if len(args) > 2 else None)
    if args[0] in ("remove", "rm") and len(args) >= 2:
        return shell.engine.remote_remove(state, args[1])
    return _info(state, "usage: git remote [-v | add <name> <url> | remove <name>]")


@git_subcommand("push")
def _git_push(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    set_upstream = any(arg in ("-u", "--set-upstream") for arg in args)
    operands = [arg for arg in args if not arg.startswith("-")]
    return shell.engine.push(
        state,
        operands[0] if operands else None,
        operands[1] if len(operands) > 1 else None,
        set_upstream=set_upstream,
    )


@git_subcommand("fetch")
def _git_fetch(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    operands = [arg for arg in args if not arg.startswith("-")]
    return shell.engine.fetch(state, operands[0] if operands else None)


@git_subcommand("pull")
def _git_pull(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    operands = [arg for arg in args if not arg.startswith("-")]
    return shell.engine.pull(
        state,
        operands[0] if operands else None,
        operands[1] if len(operands) > 1 else None,
    )


@git_subcommand("log")
def _git_log(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    oneline = "--oneline" in args
    found, value, remaining = _option_value(list(args), "-n", "--max-count")
    limit: Optional[int] = None
    try:
        if found:
            limit = int(value) if value is not None else None
        for arg in remaining:
            if arg.startswith("-") and arg[1:].isdigit():
                limit = int(arg[1:])
    except ValueError:
        return Transition(state=state, text=f"fatal: '{value}': not an integer", kind=OutputKind.ERROR)
    return shell.engine.log(state, oneline=oneline, limit=limit)


@git_subcommand("config")
def _git_config(shell: ShellSession, state: SessionState, args: List[str]) -> Transition:
    operands = [arg for arg in args if arg not in ("--global", "--local")]
    if operands and operands[0] in ("--list", "-l"):
        lines = [f"{key}={value}" for key, value in sorted(state.git.config.items())]
        return _info(state, "\n".join(lines))
    if not operands:
        return _info(state, "usage: git config [--global] <name> [<value>]")
    value = " ".join(operands[1:]) if len(operands) > 1 else None
    return shell.engine.config(state, operands[0], value)


@command(
    name="git",
    summary="Run a simulated git command",
    usage="git <command> [args...]",
    long_help=(
        "Supported commands: add, branch, checkout, commit, config, fetch, init, log, merge, "
        "pull, push, remote, reset, restore, revert, stash, status, switch"
    ),
)
def git_command(shell: ShellSession, invocation: CommandInvocation) -> CommandResult:
    if not invocation.args:
        return CommandResult(text="usage: git <command>", classification=OutputKind.INFO)
    name, args = invocation.args[0], list(invocation.args[1:])
    handler = _GIT_SUBCOMMANDS.get(name)
    if handler is None:
        return _error(f"git: '{name}' is not a git command. See 'git --help'.")
    return _from_transition(handler(shell, invocation.state, args))


# -------------------- REPL loop ------------------------------


class Completer:
    def __init__(self, session: ShellSession) -> None:
        self.session = session

    def complete(self, text: str, state: int) -> Optional[str]:
        buffer = readline.get_line_buffer()
        if " " not in buffer.strip() and not buffer.endswith(" "):
            options = [name for name in self.session.registry.names() if name.startswith(text)]
        else:
            directory, _, partial = text.rpartition("/")
            snapshot = self.session.state
            try:
                entries = list_directory(snapshot.file_system, directory or ".", snapshot.cwd)
            except FileSystemError:
                entries = []
            prefix = f"{directory}/" if directory else ""
            options = [
                prefix + name + ("/" if node.is_directory else "")
                for name, node in entries
                if name.startswith(partial)
            ]
        if state < len(options):
            return options[state]
        return None


class Shell:
    def __init__(self, session: ShellSession, *, history_path: Optional[Path] = None) -> None:
        self.session = session
        self.completer = Completer(self.session)
        readline.set_completer(self.completer.complete)
        readline.parse_and_bind("tab: complete")
        self.history_path = history_path
        if history_path is not None:
            try:
                readline.read_history_file(history_path)
            except FileNotFoundError:
                pass

    @staticmethod
    def emit(result: CommandResult) -> None:
        if not result.text:
            return
        stream = sys.stderr if result.classification is OutputKind.ERROR else sys.stdout
        print(result.text, file=stream)

    def run(self) -> None:
        try:
            while True:
                try:
                    line = input(self.session.prompt())
                except EOFError:
                    print()
                    break
                except KeyboardInterrupt:
                    print()
                    continue
                if line.strip() in ("exit", "logout"):
                    break
                self.emit(self.session.run_line(line))
        finally:
            if self.history_path is not None:
                readline.write_history_file(self.history_path)


def replay_to_console(session: ShellSession, commands: Optional[Sequence[str]] = None) -> int:
    controller = session.start_replay(commands)
    print("REPLAY MODE - watching a past session")

    def show(frame: ReplayFrame) -> None:
        if frame.result is None:
            return
        print(f"{session.prompt()}{frame.command}")
        Shell.emit(frame.result)

    controller.run(on_frame=show)
    print("REPLAY COMPLETE")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: Optional[Sequence[str]] = None) -> int:
    args_list = list(sys.argv[1:] if argv is None else argv)
    parser = argparse.ArgumentParser(prog="devquest", add_help=True)
    parser.add_argument("--session", dest="session", metavar="PATH", help="Load and save the session snapshot at PATH")
    parser.add_argument("--ledger", dest="ledger", metavar="PATH", help="Append executed commands to a JSONL ledger")
    parser.add_argument("--replay", action="store_true", help="Replay the recorded commands and exit")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to execute non-interactively")
    parsed = parser.parse_args(args_list)

    state: Optional[SessionState] = None
    session_path = Path(parsed.session) if parsed.session else None
    if session_path is not None and session_path.exists():
        try:
            state = load_session(session_path)
        except SessionStoreError as exc:
            print(f"devquest: {exc}", file=sys.stderr)
            return 1
    ledger = CommandLedger(Path(parsed.ledger)) if parsed.ledger else None
    session = ShellSession(state, ledger=ledger)

    try:
        if parsed.replay:
            recorded = ledger.commands() if ledger is not None else None
            try:
                return replay_to_console(session, recorded)
            except ReplayError as exc:
                print(f"devquest: {exc}", file=sys.stderr)
                return 1

        if parsed.command:
            result = session.run_line(" ".join(parsed.command))
            Shell.emit(result)
            return result.status

        Shell(session, history_path=Path.home() / ".devquest_history").run()
        return 0
    finally:
        if session_path is not None:
            session.save(session_path)


if __name__ == "__main__":
    sys.exit(main())
