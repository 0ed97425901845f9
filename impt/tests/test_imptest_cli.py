"""Tests for the impt-test command line and its output helpers."""

import json
from pathlib import Path

import pytest

from impt.imptest import cli
from impt.imptest.runner import FileResult, RunResult, SessionMessage, TestFile
from impt.imptest.output import ConsoleOutput, emit_error, render_summary
from impt.imptest.errors import DeviceError
from impt.imptest.session import Session, SessionCounts, SessionState


def finished(session_id="amber-cedar", failures=0):
    return Session(
        id=session_id,
        state=SessionState.FINISHED,
        counts=SessionCounts(tests=2, failures=failures, assertions=5),
        stop_requested=True,
        errored=bool(failures),
    )


class FakeRun:
    outcome = RunResult()
    instances = []

    def __init__(self, config, client=None, *, listeners=()):
        self.config = config
        self.listeners = list(listeners)
        self.files = None
        FakeRun.instances.append(self)

    def run(self, files=None):
        self.files = files
        return FakeRun.outcome


@pytest.fixture
def project(tmp_path, monkeypatch):
    (tmp_path / ".imptest").write_text(json.dumps({"modelId": "m1", "devices": ["d1"]}), encoding="utf-8")
    (tmp_path / "basic.test.nut").write_text("", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "TestRun", FakeRun)
    FakeRun.instances = []
    return tmp_path


def test_missing_config_is_reported(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert cli.main([]) == 1
    assert "config file not found" in capsys.readouterr().out


def test_missing_config_json(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert cli.main(["--json"]) == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "error"


def test_no_test_files(project, capsys):
    assert cli.main(["missing*.nut"]) == 1
    assert "No test files found" in capsys.readouterr().out


def test_successful_run(project, capsys):
    test_file = TestFile("basic.test.nut", project / "basic.test.nut", "device")
    FakeRun.outcome = RunResult(results=[FileResult(test_file, finished())])

    assert cli.main([]) == 0
    out = capsys.readouterr().out
    assert "| basic.test.nut" in out
    assert out.rstrip().endswith("Testing succeeded")
    assert [f.name for f in FakeRun.instances[0].files] == ["basic.test.nut"]


def test_aborted_run(project, capsys):
    test_file = TestFile("basic.test.nut", project / "basic.test.nut", "device")
    aborted = Session(id="x", state=SessionState.ABORTED, aborted=True, errored=True)
    FakeRun.outcome = RunResult(results=[FileResult(test_file, aborted)], abort_reason="Device disconnected")

    assert cli.main(["basic.test.nut"]) == 1
    out = capsys.readouterr().out
    assert "Testing Aborted: Device disconnected" in out
    assert "Testing failed" in out


def test_json_mode_prints_no_summary(project, capsys):
    test_file = TestFile("basic.test.nut", project / "basic.test.nut", "device")
    FakeRun.outcome = RunResult(results=[FileResult(test_file, finished())])
    assert cli.main(["--json"]) == 0
    assert capsys.readouterr().out == ""
    assert FakeRun.instances[0].listeners[0].json_output


def test_console_output_text(capsys):
    output = ConsoleOutput()
    output(SessionMessage("message", type="info", text="hello", session_id="s"))
    output(SessionMessage("message", type="debug", text="hidden", session_id="s"))
    output(SessionMessage("error", text="Device is out of memory", error=DeviceError("Device is out of memory")))
    output(SessionMessage("warning", text="careful"))
    output(SessionMessage("start"))
    assert capsys.readouterr().out.splitlines() == [
        "[info] hello",
        "error: Device is out of memory",
        "warning: careful",
    ]


def test_console_output_verbose_and_json(capsys):
    output = ConsoleOutput(json_output=True, verbose=True)
    output(SessionMessage("message", type="debug", text="raw", session_id="s"))
    output(SessionMessage("error", text="bad", error=DeviceError("bad"), session_id="s"))
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert lines == [
        {"kind": "message", "session": "s", "text": "raw", "type": "debug"},
        {"kind": "error", "session": "s", "text": "bad", "error": "DeviceError"},
    ]


def test_emit_error(capsys):
    emit_error(message="boom")
    emit_error(message="boom", json_output=True)
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "error: boom"
    assert json.loads(lines[1]) == {"status": "error", "error": "boom"}


def test_render_summary():
    test_file = TestFile("a.test.nut", Path("a.test.nut"), "agent")
    table = render_summary(RunResult(results=[FileResult(test_file, finished("s1", failures=1))]))
    header, _, row = table.splitlines()
    assert "assertions" in header
    assert [cell.strip() for cell in row.strip("|").split("|")] == [
        "a.test.nut", "agent", "s1", "finished", "2", "5", "1", "failed",
    ]
