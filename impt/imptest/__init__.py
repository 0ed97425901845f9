"""
imptest - impUnit test orchestration for Electric Imp devices.

Deploys a test build to a device/agent pair, follows the device log stream
and drives each test file's session through its protocol.  Each module is
implemented in its own file to keep responsibilities clear:

    transport.py  → Build API HTTP client (revisions, restarts, log batches)
    events.py     → raw log record classification into typed events
    poller.py     → resilient log polling (token expiry, gateway timeouts)
    session.py    → session state machine and its commands
    external.py   → external commands requested by tests
    runner.py     → session/multi-file drivers
    config.py     → ``.imptest`` configuration
    cli.py        → ``impt-test`` entry point

Source positions in runtime errors are resolved by ``impt.source_map``.
"""

from .transport import BuildAPIClient, LogBatch, PollCursor, TransportConfig, TransportError  # noqa: F401
from .errors import (  # noqa: F401
    AgentRuntimeError,
    DeviceDisconnectedError,
    DeviceError,
    DeviceRuntimeError,
    ExternalCommandExitCodeError,
    ExternalCommandTimeoutError,
    ImpTestError,
    SessionFailedError,
    StateError,
)
from .events import ClassificationError, ClassifiedEvent, UnitEvent, classify_record  # noqa: F401
from .poller import LogPoller, PollerSignal  # noqa: F401
from .session import Session, SessionConfig, SessionState, Transition, fail, request_stop, transition  # noqa: F401
from .external import ExternalCommandConfig, run_external_command  # noqa: F401
from .config import ConfigError, TestConfig  # noqa: F401
from .runner import SessionMessage, SessionRunner, TestRun  # noqa: F401

__all__ = [
    "BuildAPIClient",
    "LogBatch",
    "PollCursor",
    "TransportConfig",
    "TransportError",
    "ImpTestError",
    "StateError",
    "DeviceError",
    "DeviceRuntimeError",
    "AgentRuntimeError",
    "DeviceDisconnectedError",
    "SessionFailedError",
    "ExternalCommandTimeoutError",
    "ExternalCommandExitCodeError",
    "ClassificationError",
    "ClassifiedEvent",
    "UnitEvent",
    "classify_record",
    "LogPoller",
    "PollerSignal",
    "Session",
    "SessionConfig",
    "SessionState",
    "Transition",
    "transition",
    "fail",
    "request_stop",
    "ExternalCommandConfig",
    "run_external_command",
    "ConfigError",
    "TestConfig",
    "SessionMessage",
    "SessionRunner",
    "TestRun",
]

__version__ = "0.1.0"
