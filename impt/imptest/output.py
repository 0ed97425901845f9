"""Output helpers for impt-test."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

from tabulate import tabulate

from .runner import KIND_ERROR, KIND_MESSAGE, KIND_WARNING, RunResult, SessionMessage
from .session import MESSAGE_DEBUG


def _json_dump(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True)


@dataclass
class ConsoleOutput:
    """Session stream listener that prints to stdout."""

    json_output: bool = False
    verbose: bool = False

    def __call__(self, message: SessionMessage) -> None:
        if message.kind not in (KIND_MESSAGE, KIND_ERROR, KIND_WARNING):
            return
        if message.kind == KIND_MESSAGE and message.type == MESSAGE_DEBUG and not self.verbose:
            return
        if self.json_output:
            payload: Dict[str, Any] = {"kind": message.kind, "session": message.session_id, "text": message.text}
            if message.type:
                payload["type"] = message.type
            if message.error_kind:
                payload["error"] = message.error_kind
            print(_json_dump(payload))
            return
        if message.kind == KIND_ERROR:
            print(f"error: {message.text}")
        elif message.kind == KIND_WARNING:
            print(f"warning: {message.text}")
        else:
            print(f"[{message.type}] {message.text}")


def emit_error(*, message: str, json_output: bool = False) -> None:
    """Emit an error message respecting JSON mode."""
    if json_output:
        print(_json_dump({"status": "error", "error": message}))
    else:
        print(f"error: {message}")


def render_summary(result: RunResult) -> str:
    """Table of per-file outcomes."""
    rows: List[List[Any]] = []
    for entry in result.results:
        counts = entry.session.counts
        rows.append(
            [
                entry.file.name,
                entry.file.side,
                entry.session.id,
                entry.session.state.value,
                counts.tests,
                counts.assertions,
                counts.failures,
                "passed" if entry.passed else "failed",
            ]
        )
    headers = ["file", "side", "session", "state", "tests", "assertions", "failures", "result"]
    return tabulate(rows, headers=headers, tablefmt="github")


__all__ = ["ConsoleOutput", "emit_error", "render_summary"]
