from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .agents import AGENTS, AgentDescriptor
from .state import UnitKey
from .workspace import UnitKind

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "SKILL.md"
COMMANDS_DIRNAME = "commands"
MAX_DEPTH = 5

SKIP_DIRS = frozenset({"node_modules", ".git", "dist", "build", "__pycache__"})
SKIP_COMMAND_FILES = frozenset({"README.md", "readme.md", ".DS_Store"})

# Searched one level deep, in this order, before any recursive scan.
COMMON_SKILL_DIRS = (
    "skills",
    "skills/.curated",
    "skills/.experimental",
    "skills/.system",
)

_FRONTMATTER_RE = re.compile(r"^---\r?\n(.+?)\r?\n---\r?\n(.*)$", re.DOTALL)


def is_safe_name(name: str) -> bool:
    """A unit name must be usable as a single path component inside an agent directory."""
    if not name or name in (".", ".."):
        return False
    if "/" in name or "\\" in name or os.sep in name:
        return False
    return not os.path.isabs(name)


@dataclass(frozen=True)
class Skill:
    name: str
    description: str
    path: Path
    metadata: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def kind(self) -> UnitKind:
        return UnitKind.SKILL

    @property
    def key(self) -> UnitKey:
        return UnitKey(UnitKind.SKILL, self.name)


@dataclass(frozen=True)
class Command:
    name: str
    path: Path
    description: str | None = None

    @property
    def kind(self) -> UnitKind:
        return UnitKind.COMMAND

    @property
    def key(self) -> UnitKey:
        return UnitKey(UnitKind.COMMAND, self.name)

    @property
    def summary(self) -> str:
        return self.description or f"Command: {self.name}"


Unit = Skill | Command


@dataclass(frozen=True)
class DiscoveryResult:
    skills: tuple[Skill, ...]
    commands: tuple[Command, ...]

    @property
    def is_empty(self) -> bool:
        return not self.skills and not self.commands


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _parse_inline_mapping(value: str) -> dict[str, str]:
    out: dict[str, str] = {}
    inner = value.strip()
    if inner.startswith("{") and inner.endswith("}"):
        inner = inner[1:-1]
    for pair in inner.split(","):
        if "=" in pair:
            k, v = pair.split("=", 1)
        elif ":" in pair:
            k, v = pair.split(":", 1)
        else:
            continue
        k = k.strip()
        v = _unquote(v.strip())
        if k and v:
            out[k] = v
    return out


def parse_frontmatter(text: str) -> tuple[dict[str, str], dict[str, str], str]:
    """
    Split a markdown document into (fields, metadata, body).

    Only flat `key: value` lines are understood. A `metadata: {a=1, b=2}` line is
    parsed into the separate metadata mapping.
    """
    m = _FRONTMATTER_RE.match(text)
    if not m:
        return {}, {}, text

    header, body = m.group(1), m.group(2)
    fields: dict[str, str] = {}
    metadata: dict[str, str] = {}
    for line in header.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if key == "metadata" and value and value[0] not in ("'", '"'):
            metadata = _parse_inline_mapping(value)
            continue
        fields[key] = _unquote(value)
    return fields, metadata, body


def _list_dir(path: Path) -> list[os.DirEntry[str]] | None:
    """Directory listing, or None when the path is missing or unreadable."""
    try:
        with os.scandir(path) as it:
            return sorted(it, key=lambda e: e.name)
    except FileNotFoundError:
        return None
    except (NotADirectoryError, PermissionError, OSError) as e:
        logger.debug("Skipping unreadable directory %s: %s", path, e)
        return None


def _is_dir(entry: os.DirEntry[str]) -> bool:
    try:
        return entry.is_dir()
    except OSError:
        return False


def read_skill(skill_dir: Path) -> Skill | None:
    manifest = skill_dir / MANIFEST_FILENAME
    if not manifest.is_file():
        return None
    try:
        text = manifest.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Could not read %s: %s", manifest, e)
        return None
    fields, metadata, _ = parse_frontmatter(text)
    name = fields.get("name", "").strip()
    description = fields.get("description", "").strip()
    if not name or not description:
        return None
    if not is_safe_name(name):
        logger.warning("Skipping skill in %s: unsafe name %r", skill_dir, name)
        return None
    return Skill(name=name, description=description, path=skill_dir, metadata=metadata)


def read_command(path: Path) -> Command | None:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Could not read %s: %s", path, e)
        return None
    fields, _, _ = parse_frontmatter(text)
    name = fields.get("name", "").strip() or path.stem
    description = fields.get("description", "").strip() or None
    if not is_safe_name(name):
        logger.warning("Skipping command %s: unsafe name %r", path, name)
        return None
    return Command(name=name, path=path, description=description)


def _priority_dirs(search_path: Path, agents: Mapping[str, AgentDescriptor]) -> list[Path]:
    dirs = [search_path]
    dirs.extend(search_path / d for d in COMMON_SKILL_DIRS)
    for agent in agents.values():
        candidate = search_path / agent.skills_dir
        if candidate not in dirs:
            dirs.append(candidate)
    return dirs


def _find_skill_dirs(path: Path, depth: int = 0) -> list[Path]:
    if depth > MAX_DEPTH:
        return []
    found: list[Path] = []
    if (path / MANIFEST_FILENAME).is_file():
        found.append(path)
    entries = _list_dir(path)
    if entries is None:
        return found
    for entry in entries:
        if entry.name in SKIP_DIRS or not _is_dir(entry):
            continue
        found.extend(_find_skill_dirs(Path(entry.path), depth + 1))
    return found


def _search_path(root: Path, subpath: str | None) -> Path:
    return root / subpath if subpath else root


def discover_skills(
    root: Path,
    subpath: str | None = None,
    agents: Mapping[str, AgentDescriptor] = AGENTS,
) -> list[Skill]:
    search_path = _search_path(root, subpath)

    direct = read_skill(search_path)
    if direct is not None:
        return [direct]

    skills: list[Skill] = []
    seen: set[str] = set()

    def _take(skill: Skill | None) -> None:
        if skill is None or skill.name.lower() in seen:
            return
        seen.add(skill.name.lower())
        skills.append(skill)

    for directory in _priority_dirs(search_path, agents):
        entries = _list_dir(directory)
        if entries is None:
            continue
        for entry in entries:
            if _is_dir(entry):
                _take(read_skill(Path(entry.path)))

    if not skills:
        for skill_dir in _find_skill_dirs(search_path):
            _take(read_skill(skill_dir))

    return skills


def _find_commands_dirs(path: Path, depth: int = 0) -> list[Path]:
    if depth > MAX_DEPTH:
        return []
    entries = _list_dir(path)
    if entries is None:
        return []
    found: list[Path] = []
    for entry in entries:
        if entry.name in SKIP_DIRS or not _is_dir(entry):
            continue
        if entry.name == COMMANDS_DIRNAME:
            found.append(Path(entry.path))
        else:
            found.extend(_find_commands_dirs(Path(entry.path), depth + 1))
    return found


def discover_commands(root: Path, subpath: str | None = None) -> list[Command]:
    commands: list[Command] = []
    seen: set[str] = set()
    for commands_dir in _find_commands_dirs(_search_path(root, subpath)):
        for entry in _list_dir(commands_dir) or []:
            if entry.name in SKIP_COMMAND_FILES or not entry.is_file():
                continue
            if not entry.name.lower().endswith(".md"):
                continue
            command = read_command(Path(entry.path))
            if command is None or command.name.lower() in seen:
                continue
            seen.add(command.name.lower())
            commands.append(command)
    return commands


def discover_units(
    root: Path,
    subpath: str | None = None,
    agents: Mapping[str, AgentDescriptor] = AGENTS,
) -> DiscoveryResult:
    return DiscoveryResult(
        skills=tuple(discover_skills(root, subpath, agents)),
        commands=tuple(discover_commands(root, subpath)),
    )
