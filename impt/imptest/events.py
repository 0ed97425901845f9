"""Typed log events and the raw-record classifier for imptest."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from impt.source_map import SIDE_AGENT, SIDE_DEVICE


UNIT_MARKER = "__IMPUNIT__"

# device code logs as "server.*" for historical reasons
_LOG_SOURCE_FOR_SIDE = {SIDE_AGENT: "agent", SIDE_DEVICE: "server"}

_AGENT_RESTARTED_RE = re.compile(r"Agent restarted")
_CODE_SPACE_RE = re.compile(r"(Out of space)?.*?(\d+(?:\.\d+)?)% program storage used")
_DEVICE_DISCONNECTED_RE = re.compile(r"Device disconnected")
_DEVICE_CONNECTED_RE = re.compile(r"Device connected")
_OUT_OF_MEMORY_RE = re.compile(r"out of memory")


class ClassificationError(RuntimeError):
    """Raised when a record claims to be a unit-test message but cannot be decoded."""

    def __init__(self, message: str, record: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.record = record


@dataclass(frozen=True)
class ClassifiedEvent:
    """Base class for every event produced from a raw log record."""


@dataclass(frozen=True)
class AgentRestartedEvent(ClassifiedEvent):
    pass


@dataclass(frozen=True)
class CodeSpaceUsageEvent(ClassifiedEvent):
    percent: float = 0.0


@dataclass(frozen=True)
class OutOfCodeSpaceEvent(ClassifiedEvent):
    pass


@dataclass(frozen=True)
class OutOfMemoryEvent(ClassifiedEvent):
    pass


@dataclass(frozen=True)
class LastExitCodeEvent(ClassifiedEvent):
    text: str = ""


@dataclass(frozen=True)
class DeviceErrorEvent(ClassifiedEvent):
    text: str = ""


@dataclass(frozen=True)
class AgentErrorEvent(ClassifiedEvent):
    text: str = ""


@dataclass(frozen=True)
class DeviceConnectedEvent(ClassifiedEvent):
    pass


@dataclass(frozen=True)
class DeviceDisconnectedEvent(ClassifiedEvent):
    pass


@dataclass(frozen=True)
class PowerstateEvent(ClassifiedEvent):
    text: str = ""


@dataclass(frozen=True)
class FirmwareEvent(ClassifiedEvent):
    text: str = ""


@dataclass(frozen=True)
class UnknownEvent(ClassifiedEvent):
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UnitEvent(ClassifiedEvent):
    """Structured message emitted by the on-device test framework."""

    session_id: str = ""


@dataclass(frozen=True)
class SessionStartEvent(UnitEvent):
    pass


@dataclass(frozen=True)
class TestStartEvent(UnitEvent):
    text: str = ""

    __test__ = False


@dataclass(frozen=True)
class TestFailEvent(UnitEvent):
    text: str = ""

    __test__ = False


@dataclass(frozen=True)
class TestOkEvent(UnitEvent):
    message: Any = None

    __test__ = False


@dataclass(frozen=True)
class SessionResultEvent(UnitEvent):
    tests: int = 0
    failures: int = 0
    assertions: int = 0


@dataclass(frozen=True)
class ExternalCommandEvent(UnitEvent):
    command: str = ""


@dataclass(frozen=True)
class InfoEvent(UnitEvent):
    message: Any = None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _require_int(payload: Dict[str, Any], key: str, record: Dict[str, Any]) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ClassificationError(f"unit-test result field {key!r} is not an integer: {value!r}", record)
    return value


def parse_unit_message(text: str, record: Optional[Dict[str, Any]] = None) -> List[UnitEvent]:
    """Decode a ``__IMPUNIT__`` JSON payload into zero or one unit events."""

    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise ClassificationError(f"malformed unit-test message: {exc}", record) from exc
    if not isinstance(payload, dict):
        raise ClassificationError("unit-test message is not an object", record)
    session_id = payload.get("session")
    unit_type = payload.get("type")
    if not isinstance(session_id, str) or not isinstance(unit_type, str):
        raise ClassificationError("unit-test message lacks session or type", record)
    message = payload.get("message")

    if unit_type == "SESSION_START":
        return [SessionStartEvent(session_id=session_id)]
    if unit_type == "TEST_START":
        return [TestStartEvent(session_id=session_id, text=_text(message))]
    if unit_type == "TEST_FAIL":
        return [TestFailEvent(session_id=session_id, text=_text(message))]
    if unit_type == "TEST_OK":
        return [TestOkEvent(session_id=session_id, message=message)]
    if unit_type == "SESSION_RESULT":
        if not isinstance(message, dict):
            raise ClassificationError("unit-test result message is not an object", record)
        return [
            SessionResultEvent(
                session_id=session_id,
                tests=_require_int(message, "tests", record or {}),
                failures=_require_int(message, "failures", record or {}),
                assertions=_require_int(message, "assertions", record or {}),
            )
        ]
    if unit_type == "EXTERNAL_COMMAND":
        command = message.get("command") if isinstance(message, dict) else None
        if not isinstance(command, str) or not command:
            raise ClassificationError("external command message lacks a command", record)
        return [ExternalCommandEvent(session_id=session_id, command=command)]
    if unit_type == "INFO":
        if isinstance(message, dict) and "message" in message:
            message = message["message"]
        return [InfoEvent(session_id=session_id, message=message)]
    return []


def classify_record(record: Dict[str, Any], side: str) -> List[ClassifiedEvent]:
    """Convert one raw Build API log record into typed events.

    ``side`` is the side the test file runs on (``"agent"`` or ``"device"``);
    unit-test messages logged by the other side are not ours and fall
    through to :class:`UnknownEvent`.
    """

    record_type = str(record.get("type") or "")
    message = record.get("message")
    text = _text(message)

    if record_type == "status":
        if _AGENT_RESTARTED_RE.search(text):
            return [AgentRestartedEvent()]
        match = _CODE_SPACE_RE.search(text)
        if match:
            events: List[ClassifiedEvent] = [CodeSpaceUsageEvent(percent=float(match.group(2)))]
            if match.group(1):
                events.append(OutOfCodeSpaceEvent())
            return events
        if _DEVICE_DISCONNECTED_RE.search(text):
            return [DeviceDisconnectedEvent()]
        if _DEVICE_CONNECTED_RE.search(text):
            return [DeviceConnectedEvent()]
        return [UnknownEvent(raw=dict(record))]
    if record_type == "lastexitcode":
        if _OUT_OF_MEMORY_RE.search(text):
            return [OutOfMemoryEvent()]
        return [LastExitCodeEvent(text=text)]
    if record_type in {"server.log", "agent.log"}:
        source = record_type[: -len(".log")]
        if source == _LOG_SOURCE_FOR_SIDE.get(side) and UNIT_MARKER in text:
            return list(parse_unit_message(text, record))
        return [UnknownEvent(raw=dict(record))]
    if record_type == "server.error":
        return [AgentErrorEvent(text=text)]
    if record_type == "device.error":
        return [DeviceErrorEvent(text=text)]
    if record_type == "powerstate":
        return [PowerstateEvent(text=text)]
    if record_type == "firmware":
        return [FirmwareEvent(text=text)]
    return [UnknownEvent(raw=dict(record))]


__all__ = [
    "SIDE_AGENT",
    "SIDE_DEVICE",
    "UNIT_MARKER",
    "ClassificationError",
    "ClassifiedEvent",
    "AgentRestartedEvent",
    "CodeSpaceUsageEvent",
    "OutOfCodeSpaceEvent",
    "OutOfMemoryEvent",
    "LastExitCodeEvent",
    "DeviceErrorEvent",
    "AgentErrorEvent",
    "DeviceConnectedEvent",
    "DeviceDisconnectedEvent",
    "PowerstateEvent",
    "FirmwareEvent",
    "UnknownEvent",
    "UnitEvent",
    "SessionStartEvent",
    "TestStartEvent",
    "TestFailEvent",
    "TestOkEvent",
    "SessionResultEvent",
    "ExternalCommandEvent",
    "InfoEvent",
    "parse_unit_message",
    "classify_record",
]
