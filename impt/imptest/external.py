"""Synchronous external command runner for ``EXTERNAL_COMMAND`` unit messages."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .errors import ExternalCommandError, ExternalCommandExitCodeError, ExternalCommandTimeoutError


logger = logging.getLogger(__name__)


@dataclass
class ExternalCommandConfig:
    timeout_s: float = 30.0
    cwd: Optional[str] = None
    blocked_env_vars: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""


def command_environment(config: ExternalCommandConfig, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Host environment minus the configured block-list."""
    source = os.environ if base is None else base
    blocked = set(config.blocked_env_vars)
    return {name: value for name, value in source.items() if name not in blocked}


def format_command_output(text: str) -> str:
    lines = text.strip().splitlines()
    return "\n".join(f"> {line}" for line in lines)


def _kill(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except OSError:
            pass
    proc.kill()


def run_external_command(command: str, config: ExternalCommandConfig) -> CommandResult:
    """
    Run ``command`` through the shell and block until it finishes.

    Raises ExternalCommandTimeoutError when ``config.timeout_s`` elapses (the
    whole process group is killed) and ExternalCommandExitCodeError on a
    non-zero exit status.  A command that cannot be started at all (missing
    working directory, no shell) raises ExternalCommandError.
    """
    logger.debug("running external command %r (cwd=%s, timeout=%ss)", command, config.cwd, config.timeout_s)
    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=config.cwd,
            env=command_environment(config),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=(os.name == "posix"),
        )
    except OSError as exc:
        raise ExternalCommandError(f"External command could not be started: {exc}") from exc
    with proc:
        try:
            stdout, stderr = proc.communicate(timeout=config.timeout_s)
        except subprocess.TimeoutExpired as exc:
            _kill(proc)
            proc.communicate()
            raise ExternalCommandTimeoutError() from exc
    result = CommandResult(command=command, exit_code=proc.returncode, stdout=stdout or "", stderr=stderr or "")
    logger.debug("external command stdout: %s", result.stdout)
    logger.debug("external command stderr: %s", result.stderr)
    logger.debug("external command exit code: %s", result.exit_code)
    if result.exit_code != 0:
        raise ExternalCommandExitCodeError(result.exit_code, output=result.stdout)
    return result
