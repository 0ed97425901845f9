from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

SIDE_AGENT = "agent"
SIDE_DEVICE = "device"

# Lines the build preprocessor always inserts ahead of the first directive.
HEADER_LINES = 2

# "#line 58 '/path/to/file.nut'"; deployed code carries it commented out
_DIRECTIVE_RE = re.compile(r"^(?://)?#line (\d+) '([^']*)'")

_REFERENCE_PATTERNS: Tuple[Tuple[re.Pattern, Optional[str]], ...] = (
    (re.compile(r"\(line (\d+)\)"), None),
    (re.compile(r"agent_code:(\d+)"), SIDE_AGENT),
    (re.compile(r"device_code:(\d+)"), SIDE_DEVICE),
)


@dataclass(frozen=True)
class SourcePosition:
    path: str
    line: int

    def __str__(self) -> str:
        return f"{self.path} at line: {self.line}"


@dataclass(frozen=True)
class BuildArtifact:
    """Concatenated source as deployed to one side (agent or device)."""

    text: str
    lines: Tuple[str, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "lines", tuple(self.text.split("\n")))

    @classmethod
    def from_file(cls, path: Path) -> "BuildArtifact":
        return cls(Path(path).read_text(encoding="utf-8"))

    def locate(self, line: int, *, header_lines: int = HEADER_LINES) -> Optional[SourcePosition]:
        """
        Map a physical artifact line back to the original file and line.
        Returns None when no directive precedes ``line``.
        """
        marker: Optional[Tuple[int, int, str]] = None
        for index, text in enumerate(self.lines[: max(line, 0)], start=1):
            match = _DIRECTIVE_RE.match(text)
            if match:
                marker = (index, int(match.group(1)), match.group(2))
        if marker is None:
            return None
        marker_index, declared, path = marker
        adjusted = max(declared - 1, 1)
        return SourcePosition(path=path, line=line - marker_index + adjusted - header_lines)


class SourcePositionResolver:
    """
    Rewrites line references in runtime error text.

    Squirrel errors only know positions in the deployed artifact, e.g.
    ``(line 123)``, ``agent_code:123`` or ``device_code:123``.  The first such
    reference is replaced by ``<path> at line: <n>`` using the ``#line``
    directives the builder left in the artifact.
    """

    def __init__(
        self,
        *,
        side: str,
        device_code: BuildArtifact | str = "",
        agent_code: BuildArtifact | str = "",
        header_lines: int = HEADER_LINES,
    ) -> None:
        self.side = side
        self.device_code = device_code if isinstance(device_code, BuildArtifact) else BuildArtifact(device_code)
        self.agent_code = agent_code if isinstance(agent_code, BuildArtifact) else BuildArtifact(agent_code)
        self.header_lines = header_lines

    def _artifact(self, side: str) -> BuildArtifact:
        return self.agent_code if side == SIDE_AGENT else self.device_code

    def resolve(self, text: str) -> str:
        if not text:
            return text
        for pattern, forced_side in _REFERENCE_PATTERNS:
            match = pattern.search(text)
            if match is None:
                continue
            side = forced_side or self.side
            position = self._artifact(side).locate(int(match.group(1)), header_lines=self.header_lines)
            if position is None:
                return text
            return text[: match.start()] + str(position) + text[match.end() :]
        return text

    __call__ = resolve


def resolve_error_position(
    text: str,
    side: str,
    device_code: BuildArtifact | str,
    agent_code: BuildArtifact | str,
) -> str:
    return SourcePositionResolver(side=side, device_code=device_code, agent_code=agent_code).resolve(text)


__all__: List[str] = [
    "SIDE_AGENT",
    "SIDE_DEVICE",
    "HEADER_LINES",
    "BuildArtifact",
    "SourcePosition",
    "SourcePositionResolver",
    "resolve_error_position",
]
