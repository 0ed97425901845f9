"""Run driver: deploys code, pumps the poller into the session state machine
and executes the resulting commands."""

from __future__ import annotations

import glob
import logging
import re
import secrets
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple

from impt.source_map import SourcePositionResolver

from .config import TestConfig
from .errors import ExternalCommandError, ExternalCommandExitCodeError
from .events import SIDE_AGENT, SIDE_DEVICE
from .external import CommandResult, ExternalCommandConfig, format_command_output, run_external_command
from .poller import SIGNAL_DONE, SIGNAL_ERROR, SIGNAL_LOG, SIGNAL_READY, LogPoller
from .session import (
    MESSAGE_COMMAND_OUTPUT,
    MESSAGE_INFO,
    AbortRun,
    Command,
    EmitError,
    EmitMessage,
    EmitSignal,
    EmitWarning,
    RunExternalCommand,
    Session,
    SessionConfig,
    StopPoller,
    Transition,
    fail,
    generate_session_id,
    request_stop,
    transition,
)
from .transport import BuildAPIClient, TransportError


logger = logging.getLogger(__name__)

KIND_MESSAGE = "message"
KIND_ERROR = "error"
KIND_WARNING = "warning"

_AGENT_NAME_RE = re.compile(r"\bagent\b", re.IGNORECASE)


@dataclass(frozen=True)
class SessionMessage:
    """One item of the observable session stream."""

    kind: str
    type: Optional[str] = None
    text: str = ""
    error: Optional[BaseException] = None
    session_id: Optional[str] = None

    @property
    def error_kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None


Listener = Callable[[SessionMessage], None]
CommandRunner = Callable[[str, ExternalCommandConfig], CommandResult]


def comment_line_directives(code: str) -> str:
    """Deployed code keeps the ``#line`` markers as comments."""
    return re.sub(r"^#line ", "//#line ", code, flags=re.MULTILINE)


class SessionRunner:
    """Drive a single test session against one device."""

    def __init__(
        self,
        client: BuildAPIClient,
        *,
        config: Optional[SessionConfig] = None,
        poller_factory: Callable[[BuildAPIClient], LogPoller] = LogPoller,
        command_runner: CommandRunner = run_external_command,
    ) -> None:
        self.client = client
        self.config = config or SessionConfig()
        self.poller_factory = poller_factory
        self.command_runner = command_runner
        self.session: Optional[Session] = None
        self.poller: Optional[LogPoller] = None
        self._listeners: List[Listener] = []

    def register_listener(self, callback: Listener) -> None:
        self._listeners.append(callback)

    def run(
        self,
        *,
        session_id: str,
        device_id: str,
        model_id: str,
        side: str,
        device_code: str,
        agent_code: str,
    ) -> Session:
        device_code = comment_line_directives(device_code)
        agent_code = comment_line_directives(agent_code)
        resolver = SourcePositionResolver(side=side, device_code=device_code, agent_code=agent_code)
        self.session = Session(id=session_id, side=side, config=self.config)
        self.poller = self.poller_factory(self.client)
        for signal in self.poller.start(device_id, side):
            if signal.kind == SIGNAL_READY:
                self._deploy(model_id, device_id, device_code, agent_code)
            elif signal.kind == SIGNAL_LOG:
                if signal.error is not None:
                    self._apply(fail(self.session, signal.error))
                elif signal.event is not None:
                    self._apply(transition(self.session, signal.event, resolver))
            elif signal.kind == SIGNAL_ERROR:
                self._apply(fail(self.session, signal.error or TransportError("log stream failed")))
            elif signal.kind == SIGNAL_DONE:
                self._apply(request_stop(self.session))
        if not self.session.stop_requested:
            self._apply(request_stop(self.session))
        return self.session

    #
    # Internal helpers
    #
    def _deploy(self, model_id: str, device_id: str, device_code: str, agent_code: str) -> None:
        assert self.session is not None
        try:
            version = self.client.create_revision(model_id, device_code, agent_code)
            self._emit(SessionMessage(KIND_MESSAGE, type=MESSAGE_INFO, text=f"Created revision: {version}"))
            self.client.restart_device(device_id)
            logger.debug("device %s restarted", device_id)
        except TransportError as exc:
            self._apply(fail(self.session, exc))

    def _apply(self, result: Transition) -> None:
        self.session = result.session
        for command in result.commands:
            self._execute(command)

    def _execute(self, command: Command) -> None:
        if isinstance(command, EmitMessage):
            self._emit(SessionMessage(KIND_MESSAGE, type=command.type, text=command.text))
        elif isinstance(command, EmitError):
            self._emit(SessionMessage(KIND_ERROR, text=str(command.error), error=command.error))
        elif isinstance(command, EmitWarning):
            self._emit(SessionMessage(KIND_WARNING, text=str(command.error), error=command.error))
        elif isinstance(command, EmitSignal):
            self._emit(SessionMessage(command.name))
        elif isinstance(command, RunExternalCommand):
            self._run_command(command.command)
        elif isinstance(command, StopPoller):
            if self.poller is not None:
                self.poller.stop()
        elif isinstance(command, AbortRun):
            logger.debug("run abort requested: %s", command.reason)
        else:
            raise TypeError(f"unhandled command {command!r}")

    def _run_command(self, command: str) -> None:
        assert self.session is not None
        try:
            result = self.command_runner(command, self.config.external_command)
        except ExternalCommandError as exc:
            if isinstance(exc, ExternalCommandExitCodeError):
                self._emit_command_output(exc.output)
            self._apply(fail(self.session, exc))
            return
        self._emit_command_output(result.stdout)

    def _emit_command_output(self, output: str) -> None:
        text = format_command_output(output)
        if text:
            self._emit(SessionMessage(KIND_MESSAGE, type=MESSAGE_COMMAND_OUTPUT, text=text))

    def _emit(self, message: SessionMessage) -> None:
        if message.session_id is None and self.session is not None:
            message = replace(message, session_id=self.session.id)
        for callback in list(self._listeners):
            callback(message)


#
# Multi-file driver
#
@dataclass(frozen=True)
class TestFile:
    name: str
    path: Path
    side: str

    __test__ = False


@dataclass
class FileResult:
    file: TestFile
    session: Session

    @property
    def passed(self) -> bool:
        return not self.session.errored


@dataclass
class RunResult:
    results: List[FileResult] = field(default_factory=list)
    abort_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return bool(self.results) and all(result.passed for result in self.results) and not self.abort_reason


def discover_test_files(patterns: Iterable[str], root: Path) -> List[TestFile]:
    """Expand glob patterns relative to ``root``; agent tests carry the word "agent"."""
    root = Path(root)
    files: List[TestFile] = []
    seen: Set[Path] = set()
    for pattern in patterns:
        for name in sorted(glob.glob(pattern, root_dir=str(root), recursive=True)):
            path = (root / name).resolve()
            if path in seen or not path.is_file():
                continue
            seen.add(path)
            side = SIDE_AGENT if _AGENT_NAME_RE.search(name) else SIDE_DEVICE
            files.append(TestFile(name=name, path=path, side=side))
    return files


def build_bootstrap(session_id: str, *, timeout: float, stop_on_failure: bool, start_timeout: float) -> str:
    """Squirrel snippet that starts the on-device test runner for ``session_id``."""
    return (
        "// bootstrap tests\n"
        f"imp.wakeup({float(start_timeout)}, function() {{\n"
        "  local t = ImpUnitRunner();\n"
        "  t.readableOutput = false;\n"
        f'  t.session = "{session_id}";\n'
        f"  t.timeout = {float(timeout)};\n"
        f"  t.stopOnFailure = {'true' if stop_on_failure else 'false'};\n"
        "  t.run();\n"
        "});"
    )


def assemble_code(
    test_file: TestFile,
    test_code: str,
    *,
    framework_code: str,
    device_source: str,
    agent_source: str,
    bootstrap: str,
    reload_trigger: Optional[str] = None,
) -> Tuple[str, str]:
    """Return ``(device_code, agent_code)`` for one test file."""
    # a fresh string makes every revision distinct, so the device reports code space usage again
    trigger = reload_trigger or f'// force code update\n"{secrets.token_hex(16)}"'
    if test_file.side == SIDE_AGENT:
        agent_code = "\n\n".join((framework_code, agent_source, test_code.strip(), bootstrap))
        device_code = "\n\n".join((device_source, trigger))
    else:
        device_code = "\n\n".join((framework_code, device_source, test_code.strip(), bootstrap, trigger))
        agent_code = agent_source
    return device_code, agent_code


def _default_runner(client: BuildAPIClient, config: SessionConfig) -> SessionRunner:
    return SessionRunner(client, config=config)


class TestRun:
    """Run every discovered test file against the first configured device."""

    __test__ = False

    def __init__(
        self,
        config: TestConfig,
        client: Optional[BuildAPIClient] = None,
        *,
        runner_factory: Optional[Callable[[BuildAPIClient, SessionConfig], SessionRunner]] = None,
        listeners: Sequence[Listener] = (),
    ) -> None:
        self.config = config
        self.client = client or BuildAPIClient(config.transport_config())
        self.runner_factory = runner_factory or _default_runner
        self.listeners = list(listeners)
        self._session_ids: Set[str] = set()

    def _read_optional(self, value: Optional[str], placeholder: str) -> str:
        if not value:
            return placeholder
        path = self.config.resolve_path(value)
        logger.debug("reading %s", path)
        return path.read_text(encoding="utf-8").strip()

    def run(self, files: Optional[Sequence[TestFile]] = None) -> RunResult:
        if files is None:
            files = discover_test_files(self.config.tests, self.config.directory)
        result = RunResult()
        if not files:
            return result
        device_source = self._read_optional(self.config.device_file, "/* no device source provided */")
        agent_source = self._read_optional(self.config.agent_file, "/* no agent source provided */")
        framework_code = self._read_optional(self.config.test_framework_file, "")
        device_id = self.config.devices[0]
        session_config = self.config.session_config()

        for test_file in files:
            session_id = generate_session_id(self._session_ids)
            self._session_ids.add(session_id)
            bootstrap = build_bootstrap(
                session_id,
                timeout=self.config.timeout,
                stop_on_failure=self.config.stop_on_failure,
                start_timeout=self.config.start_timeout,
            )
            device_code, agent_code = assemble_code(
                test_file,
                test_file.path.read_text(encoding="utf-8"),
                framework_code=framework_code,
                device_source=device_source,
                agent_source=agent_source,
                bootstrap=bootstrap,
            )
            runner = self.runner_factory(self.client, session_config)
            for listener in self.listeners:
                runner.register_listener(listener)
            logger.info("running %s test file %s in session %s", test_file.side, test_file.name, session_id)
            session = runner.run(
                session_id=session_id,
                device_id=device_id,
                model_id=self.config.model_id,
                side=test_file.side,
                device_code=device_code,
                agent_code=agent_code,
            )
            result.results.append(FileResult(file=test_file, session=session))
            if session.aborted:
                result.abort_reason = session.abort_reason
                break
            if session.errored and self.config.stop_on_failure:
                break
        return result
