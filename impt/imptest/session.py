"""Test session state machine.

A :class:`Session` is immutable; :func:`transition` maps ``(session, event)``
to a :class:`Transition` holding the next session value and the commands the
caller must execute (emit a message, run an external command, stop the
poller, abort the run).  The state machine itself performs no I/O.
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Collection, List, Optional, Tuple

from .errors import (
    AgentRuntimeError,
    DeviceDisconnectedError,
    DeviceError,
    DeviceRuntimeError,
    ImpTestError,
    SessionFailedError,
    StateError,
)
from .events import (
    SIDE_DEVICE,
    AgentErrorEvent,
    AgentRestartedEvent,
    ClassifiedEvent,
    CodeSpaceUsageEvent,
    DeviceConnectedEvent,
    DeviceDisconnectedEvent,
    DeviceErrorEvent,
    ExternalCommandEvent,
    FirmwareEvent,
    InfoEvent,
    LastExitCodeEvent,
    OutOfCodeSpaceEvent,
    OutOfMemoryEvent,
    PowerstateEvent,
    SessionResultEvent,
    SessionStartEvent,
    TestFailEvent,
    TestOkEvent,
    TestStartEvent,
    UnitEvent,
    UnknownEvent,
)
from .external import ExternalCommandConfig


logger = logging.getLogger(__name__)

Resolver = Callable[[str], str]

MESSAGE_INFO = "info"
MESSAGE_DEBUG = "debug"
MESSAGE_TEST = "test"
MESSAGE_TEST_FAIL = "testFail"
MESSAGE_TEST_INFO = "testInfo"
MESSAGE_COMMAND_OUTPUT = "externalCommandOutput"

SIGNAL_START = "start"
SIGNAL_TEST_MESSAGE = "testMessage"
SIGNAL_RESULT = "result"
SIGNAL_DONE = "done"

_ID_WORDS = (
    "amber", "anchor", "apple", "arrow", "autumn", "badge", "basket", "beacon", "bird", "blossom",
    "branch", "breeze", "brick", "bridge", "cable", "candle", "canyon", "carbon", "castle", "cedar",
    "chalk", "cherry", "circle", "cloud", "clover", "comet", "copper", "coral", "cotton", "crystal",
    "dawn", "delta", "desert", "dune", "eagle", "ember", "engine", "falcon", "feather", "fern",
    "field", "flame", "forest", "fossil", "frost", "garden", "glacier", "granite", "harbor", "hazel",
    "island", "ivory", "jacket", "jungle", "kettle", "lagoon", "lantern", "lemon", "linen", "maple",
    "marble", "meadow", "mirror", "moss", "night", "ocean", "olive", "orbit", "pebble", "pepper",
    "pine", "planet", "pocket", "prairie", "quartz", "rain", "raven", "ribbon", "river", "rocket",
    "saddle", "salt", "shadow", "silver", "socket", "spark", "spring", "stone", "summer", "thunder",
    "timber", "tulip", "valley", "velvet", "violet", "wagon", "willow", "winter", "yarn", "zephyr",
)


def generate_session_id(taken: Collection[str] = (), *, rng: Optional[random.Random] = None) -> str:
    """Random two-word id, regenerated while it collides with ``taken``."""
    rng = rng or random.Random()
    while True:
        candidate = "-".join(rng.choice(_ID_WORDS) for _ in range(2))
        if candidate not in taken:
            return candidate


class SessionState(str, Enum):
    INITIALIZED = "initialized"
    READY = "ready"
    STARTED = "started"
    FINISHED = "finished"
    ABORTED = "aborted"


@dataclass
class SessionConfig:
    allow_disconnect: bool = False
    stop_on_failure: bool = False
    external_command: ExternalCommandConfig = field(default_factory=ExternalCommandConfig)


@dataclass(frozen=True)
class SessionCounts:
    tests: int = 0
    failures: int = 0
    assertions: int = 0


@dataclass(frozen=True)
class Session:
    id: str
    side: str = SIDE_DEVICE
    config: SessionConfig = field(default_factory=SessionConfig)
    state: SessionState = SessionState.INITIALIZED
    counts: SessionCounts = field(default_factory=SessionCounts)
    stop_requested: bool = False
    errored: bool = False
    aborted: bool = False
    abort_reason: Optional[str] = None
    code_space_usage: Optional[float] = None

    @property
    def allow_disconnect(self) -> bool:
        return self.config.allow_disconnect


#
# Commands returned by the transition function
#
@dataclass(frozen=True)
class Command:
    pass


@dataclass(frozen=True)
class EmitMessage(Command):
    type: str
    text: str


@dataclass(frozen=True)
class EmitError(Command):
    error: Exception


@dataclass(frozen=True)
class EmitWarning(Command):
    error: Exception


@dataclass(frozen=True)
class EmitSignal(Command):
    name: str


@dataclass(frozen=True)
class RunExternalCommand(Command):
    command: str


@dataclass(frozen=True)
class StopPoller(Command):
    pass


@dataclass(frozen=True)
class AbortRun(Command):
    reason: str


@dataclass(frozen=True)
class Transition:
    session: Session
    commands: Tuple[Command, ...] = ()


def _identity(text: str) -> str:
    return text


def _finalize(session: Session, commands: List[Command]) -> Session:
    # runs once: stop_requested never goes back to False
    if session.stop_requested:
        return session
    session = replace(session, stop_requested=True)
    verdict = "failed" if session.errored else "succeeded"
    commands.append(EmitMessage(MESSAGE_INFO, f"Session {session.id} {verdict}"))
    commands.append(EmitSignal(SIGNAL_DONE))
    commands.append(StopPoller())
    return session


def _raise_error(session: Session, error: Exception, commands: List[Command]) -> Session:
    commands.append(EmitError(error))
    if not session.errored:
        session = replace(session, errored=True)
    return _finalize(session, commands)


def _by_severity(session: Session, error: ImpTestError, commands: List[Command]) -> Session:
    # pre-start device chatter is often benign
    if session.state is SessionState.STARTED:
        return _raise_error(session, error, commands)
    commands.append(EmitWarning(error))
    return session


def _disconnected(session: Session, commands: List[Command]) -> Session:
    if session.allow_disconnect:
        commands.append(EmitMessage(MESSAGE_INFO, "Disconnected. Allowed by config."))
        return session
    error = DeviceDisconnectedError()
    if session.state is SessionState.STARTED:
        commands.append(EmitError(error))
    else:
        commands.append(EmitWarning(error))
    session = replace(
        session,
        state=SessionState.ABORTED,
        aborted=True,
        errored=True,
        abort_reason=error.message,
    )
    commands.append(AbortRun(error.message))
    return _finalize(session, commands)


def _unit(session: Session, event: UnitEvent, resolve: Resolver, commands: List[Command]) -> Session:
    if event.session_id != session.id:
        logger.debug("skipping unit message from session %r (active %r)", event.session_id, session.id)
        return session
    commands.append(EmitSignal(SIGNAL_TEST_MESSAGE))

    if isinstance(event, SessionStartEvent):
        if session.state is not SessionState.READY:
            return _raise_error(session, StateError(), commands)
        commands.append(EmitSignal(SIGNAL_START))
        return replace(session, state=SessionState.STARTED)

    if session.state is not SessionState.STARTED:
        return _raise_error(session, StateError(), commands)

    if isinstance(event, SessionResultEvent):
        commands.append(EmitSignal(SIGNAL_RESULT))
        session = replace(
            session,
            state=SessionState.FINISHED,
            counts=SessionCounts(tests=event.tests, failures=event.failures, assertions=event.assertions),
        )
        summary = f"Tests: {event.tests}, Assertions: {event.assertions}, Failures: {event.failures}"
        if event.failures:
            commands.append(EmitMessage(MESSAGE_TEST, summary))
            failed = SessionFailedError(fatal=session.config.stop_on_failure)
            return _raise_error(session, failed, commands)
        commands.append(EmitMessage(MESSAGE_INFO, summary))
        return _finalize(session, commands)
    if isinstance(event, TestStartEvent):
        commands.append(EmitMessage(MESSAGE_TEST, event.text))
    elif isinstance(event, TestFailEvent):
        commands.append(EmitMessage(MESSAGE_TEST_FAIL, f"Test Error: {resolve(event.text)}"))
    elif isinstance(event, TestOkEvent):
        if event.message is None:
            commands.append(EmitMessage(MESSAGE_TEST, "Success"))
        else:
            text = event.message if isinstance(event.message, str) else json.dumps(event.message)
            commands.append(EmitMessage(MESSAGE_TEST, f"Success: {text}"))
    elif isinstance(event, ExternalCommandEvent):
        commands.append(EmitMessage(MESSAGE_INFO, f"Running external command {event.command}"))
        commands.append(RunExternalCommand(event.command))
    elif isinstance(event, InfoEvent):
        commands.append(EmitMessage(MESSAGE_TEST_INFO, json.dumps(event.message)))
    else:
        raise TypeError(f"unhandled unit event {event!r}")
    return session


def transition(session: Session, event: ClassifiedEvent, resolve: Optional[Resolver] = None) -> Transition:
    """Apply one classified event to ``session``."""
    resolve = resolve or _identity
    commands: List[Command] = []

    if isinstance(event, UnitEvent):
        session = _unit(session, event, resolve, commands)
    elif isinstance(event, AgentRestartedEvent):
        # also the signal that the new revision replaced the previous one
        if session.state is SessionState.INITIALIZED:
            session = replace(session, state=SessionState.READY)
    elif isinstance(event, CodeSpaceUsageEvent):
        if session.code_space_usage != event.percent:
            commands.append(EmitMessage(MESSAGE_INFO, "Device code space usage: %.1f%%" % event.percent))
            session = replace(session, code_space_usage=event.percent)
    elif isinstance(event, OutOfCodeSpaceEvent):
        session = _by_severity(session, DeviceError("Device is out of code space"), commands)
    elif isinstance(event, OutOfMemoryEvent):
        session = _by_severity(session, DeviceError("Device is out of memory"), commands)
    elif isinstance(event, LastExitCodeEvent):
        session = _by_severity(session, DeviceError(f"Device Error: {event.text}"), commands)
    elif isinstance(event, DeviceErrorEvent):
        error = DeviceRuntimeError(f"Device Runtime Error: {resolve(event.text)}")
        session = _by_severity(session, error, commands)
    elif isinstance(event, AgentErrorEvent):
        error = AgentRuntimeError(f"Agent Runtime Error: {resolve(event.text)}")
        session = _by_severity(session, error, commands)
    elif isinstance(event, DeviceDisconnectedEvent):
        session = _disconnected(session, commands)
    elif isinstance(event, DeviceConnectedEvent):
        pass
    elif isinstance(event, PowerstateEvent):
        commands.append(EmitMessage(MESSAGE_INFO, f"Powerstate: {event.text}"))
    elif isinstance(event, FirmwareEvent):
        commands.append(EmitMessage(MESSAGE_INFO, f"Firmware: {event.text}"))
    elif isinstance(event, UnknownEvent):
        raw = event.raw
        commands.append(EmitMessage(MESSAGE_DEBUG, f"Message of type {raw.get('type')}: {raw.get('message')}"))
    else:
        raise TypeError(f"unhandled event {event!r}")
    return Transition(session, tuple(commands))


def fail(session: Session, error: Exception) -> Transition:
    """Apply an out-of-band fatal error (transport, classification, external command)."""
    commands: List[Command] = []
    session = _raise_error(session, error, commands)
    return Transition(session, tuple(commands))


def request_stop(session: Session) -> Transition:
    commands: List[Command] = []
    session = _finalize(session, commands)
    return Transition(session, tuple(commands))


__all__ = [
    "SessionState",
    "SessionConfig",
    "SessionCounts",
    "Session",
    "Command",
    "EmitMessage",
    "EmitError",
    "EmitWarning",
    "EmitSignal",
    "RunExternalCommand",
    "StopPoller",
    "AbortRun",
    "Transition",
    "generate_session_id",
    "transition",
    "fail",
    "request_stop",
]
