"""``.imptest`` configuration file support."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .external import ExternalCommandConfig
from .session import SessionConfig
from .transport import DEFAULT_API_ENDPOINT, TransportConfig


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = ".imptest"
API_KEY_ENV = "IMP_BUILD_API_KEY"
DEFAULT_TEST_PATTERNS = ("*.test.nut", "tests/**/*.test.nut")


class ConfigError(RuntimeError):
    """Raised when the configuration file is missing or invalid."""


def _string_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(value)
    raise ConfigError(f"{key!r} must be a string or a list of strings")


@dataclass
class TestConfig:
    model_id: str
    devices: List[str]
    directory: Path = field(default_factory=Path.cwd)
    api_key: Optional[str] = None
    api_endpoint: str = DEFAULT_API_ENDPOINT
    device_file: Optional[str] = None
    agent_file: Optional[str] = None
    tests: List[str] = field(default_factory=lambda: list(DEFAULT_TEST_PATTERNS))
    test_framework_file: Optional[str] = None
    stop_on_failure: bool = False
    timeout: float = 10.0
    start_timeout: float = 2.0
    allow_disconnect: bool = False
    external_commands_timeout: float = 30.0
    external_commands_cwd: Optional[str] = None
    external_commands_blocked_env_vars: List[str] = field(default_factory=list)

    __test__ = False  # not a pytest test class

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, directory: Optional[Path] = None) -> "TestConfig":
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a JSON object")
        model_id = data.get("modelId")
        if not model_id:
            raise ConfigError("'modelId' is required")
        devices = _string_list(data.get("devices"), "devices")
        if not devices:
            raise ConfigError("'devices' must list at least one device id")
        directory = Path(directory or Path.cwd()).resolve()
        cwd = data.get("externalCommandsCwd")
        try:
            return cls(
                model_id=str(model_id),
                devices=devices,
                directory=directory,
                api_key=data.get("apiKey") or os.environ.get(API_KEY_ENV),
                api_endpoint=data.get("apiEndpoint") or DEFAULT_API_ENDPOINT,
                device_file=data.get("deviceFile") or None,
                agent_file=data.get("agentFile") or None,
                tests=_string_list(data.get("tests"), "tests") or list(DEFAULT_TEST_PATTERNS),
                test_framework_file=data.get("testFrameworkFile") or None,
                stop_on_failure=bool(data.get("stopOnFailure", False)),
                timeout=float(data.get("timeout", 10)),
                start_timeout=float(data.get("startTimeout", 2)),
                allow_disconnect=bool(data.get("allowDisconnect", False)),
                external_commands_timeout=float(data.get("externalCommandsTimeout", 30)),
                external_commands_cwd=str(directory / cwd) if cwd else str(directory),
                external_commands_blocked_env_vars=_string_list(
                    data.get("externalCommandsBlockedEnvVars"), "externalCommandsBlockedEnvVars"
                ),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid configuration value: {exc}") from exc

    @classmethod
    def from_file(cls, path: Path) -> "TestConfig":
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigError(f"config file not found: {path}") from exc
        except (OSError, ValueError) as exc:
            raise ConfigError(f"cannot read config file {path}: {exc}") from exc
        logger.debug("loaded config from %s", path)
        return cls.from_dict(data, directory=path.resolve().parent)

    def resolve_path(self, value: str) -> Path:
        return (self.directory / value).resolve()

    def transport_config(self) -> TransportConfig:
        return TransportConfig(api_endpoint=self.api_endpoint, api_key=self.api_key)

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            allow_disconnect=self.allow_disconnect,
            stop_on_failure=self.stop_on_failure,
            external_command=ExternalCommandConfig(
                timeout_s=self.external_commands_timeout,
                cwd=self.external_commands_cwd,
                blocked_env_vars=list(self.external_commands_blocked_env_vars),
            ),
        )
