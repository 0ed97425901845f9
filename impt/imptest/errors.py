"""Session error taxonomy.

Every error the session state machine can report derives from
:class:`ImpTestError`.  ``kind`` is the stable name used in emitted
``error`` / ``warning`` messages; ``fatal`` tells the run driver whether the
error should stop a multi-file run.
"""

from __future__ import annotations

from typing import Optional


class ImpTestError(RuntimeError):
    """Base class for errors reported by a test session."""

    default_message = "Test session error"

    def __init__(self, message: Optional[str] = None, *, fatal: bool = True) -> None:
        super().__init__(message or self.default_message)
        self.fatal = fatal

    @property
    def kind(self) -> str:
        return type(self).__name__

    @property
    def message(self) -> str:
        return str(self)


class StateError(ImpTestError):
    """A unit-test message arrived while the session was in the wrong state."""

    default_message = "Invalid test session state"


class DeviceError(ImpTestError):
    """Code space exhaustion, out of memory or a generic bad exit."""

    default_message = "Device error"


class DeviceRuntimeError(ImpTestError):
    default_message = "Device Runtime Error"


class AgentRuntimeError(ImpTestError):
    default_message = "Agent Runtime Error"


class DeviceDisconnectedError(ImpTestError):
    default_message = "Device disconnected"


class SessionFailedError(ImpTestError):
    """The on-device framework reported failed assertions."""

    default_message = "Session failed"


class ExternalCommandError(ImpTestError):
    default_message = "External command failed"


class ExternalCommandTimeoutError(ExternalCommandError):
    default_message = "External command timed out"


class ExternalCommandExitCodeError(ExternalCommandError):
    def __init__(self, exit_code: int, message: Optional[str] = None, *, output: str = "") -> None:
        super().__init__(message or f"External command failed with exit code {exit_code}")
        self.exit_code = exit_code
        self.output = output


__all__ = [
    "ImpTestError",
    "StateError",
    "DeviceError",
    "DeviceRuntimeError",
    "AgentRuntimeError",
    "DeviceDisconnectedError",
    "SessionFailedError",
    "ExternalCommandError",
    "ExternalCommandTimeoutError",
    "ExternalCommandExitCodeError",
]
