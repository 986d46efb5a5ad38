from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

STORE_DIRNAME = ".flins"


class Scope(str, Enum):
    PROJECT = "project"
    GLOBAL = "global"


class UnitKind(str, Enum):
    SKILL = "skill"
    COMMAND = "command"


@dataclass(frozen=True)
class Workspace:
    """Filesystem anchors for one invocation: the user's home and the project root."""

    home: Path
    cwd: Path

    @classmethod
    def current(cls) -> "Workspace":
        return cls(home=Path.home(), cwd=Path.cwd())

    def expand(self, path: str, scope: Scope) -> Path:
        # Global paths are written as "~/..."; project paths are relative to cwd.
        if path == "~" or path.startswith("~/"):
            return self.home / path[2:] if path != "~" else self.home
        p = Path(path)
        if p.is_absolute():
            return p
        if scope is Scope.GLOBAL:
            return self.home / p
        return self.cwd / p

    def store_dir(self, scope: Scope) -> Path:
        base = self.home if scope is Scope.GLOBAL else self.cwd
        return base / STORE_DIRNAME

    def display(self, path: Path) -> str:
        for base, prefix in ((self.cwd, "."), (self.home, "~")):
            try:
                rel = path.relative_to(base)
            except ValueError:
                continue
            return f"{prefix}/{rel}" if str(rel) != "." else prefix
        return str(path)
