from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from .agents import AgentDescriptor
from .client import FlinsError
from .discovery import MANIFEST_FILENAME, Command, Skill, Unit, is_safe_name
from .workspace import Scope, UnitKind, Workspace

logger = logging.getLogger(__name__)

EXCLUDE_FILES = frozenset({"README.md", "metadata.json"})


@dataclass(frozen=True)
class InstallOutcome:
    success: bool
    path: Path | None
    error: str | None = None


def is_excluded(name: str) -> bool:
    return name in EXCLUDE_FILES or name.startswith("_")


def _describe(e: BaseException) -> str:
    return str(e) or e.__class__.__name__


def copy_payload(src: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    for entry in sorted(src.iterdir(), key=lambda p: p.name):
        if is_excluded(entry.name):
            continue
        target = dest / entry.name
        if entry.is_dir():
            copy_payload(entry, target)
        else:
            shutil.copy2(entry, target)


def _clear(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


class UnsafePathError(FlinsError):
    pass


def _child(root: Path, name: str, filename: str) -> Path:
    """`root / filename`, refusing anything that would land outside `root`."""
    path = root / filename
    if not is_safe_name(name) or os.path.normpath(path.parent) != os.path.normpath(root):
        raise UnsafePathError(f"Refusing to install {name!r} outside {root}")
    return path


def unit_filename(unit: Unit) -> str:
    return f"{unit.name}.md" if isinstance(unit, Command) else unit.name


def target_path(unit: Unit, agent: AgentDescriptor, scope: Scope, workspace: Workspace) -> Path | None:
    if isinstance(unit, Command):
        root = agent.commands_root(scope, workspace)
        return _child(root, unit.name, unit_filename(unit)) if root is not None else None
    return _child(agent.skills_root(scope, workspace), unit.name, unit_filename(unit))


def store_path(kind: UnitKind, name: str, scope: Scope, workspace: Workspace) -> Path:
    """Canonical location of a unit's payload in symlink mode."""
    base = workspace.store_dir(scope) / ("skills" if kind is UnitKind.SKILL else "commands")
    return _child(base, name, f"{name}.md" if kind is UnitKind.COMMAND else name)


def materialize(unit: Unit, scope: Scope, workspace: Workspace) -> Path:
    dest = store_path(unit.kind, unit.name, scope, workspace)
    dest.parent.mkdir(parents=True, exist_ok=True)
    _clear(dest)
    if isinstance(unit, Skill):
        copy_payload(unit.path, dest)
    else:
        shutil.copy2(unit.path, dest)
    return dest


def link(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    _clear(target)
    rel = os.path.relpath(source, target.parent)
    os.symlink(rel, target, target_is_directory=source.is_dir())


def install_copy(unit: Unit, target: Path) -> None:
    if isinstance(unit, Skill):
        # A previous symlink install would otherwise have its store copy overwritten.
        if target.is_symlink():
            target.unlink()
        copy_payload(unit.path, target)
        return
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.is_symlink():
        target.unlink()
    shutil.copy2(unit.path, target)


def install_unit(
    unit: Unit,
    agent: AgentDescriptor,
    scope: Scope,
    workspace: Workspace,
    *,
    symlink: bool = True,
    store_path: Path | None = None,
) -> InstallOutcome:
    """
    Install one unit for one agent. Never raises for filesystem problems.

    In symlink mode `store_path` is the already materialized store copy; when it is
    missing the unit is materialized here.
    """
    try:
        target = target_path(unit, agent, scope, workspace)
    except UnsafePathError as e:
        return InstallOutcome(False, None, str(e))
    if target is None:
        return InstallOutcome(False, None, f"Agent {agent.id} does not support commands")
    try:
        if symlink:
            link(store_path or materialize(unit, scope, workspace), target)
        else:
            install_copy(unit, target)
    except (OSError, UnsafePathError) as e:
        logger.debug("Install of %s for %s failed", unit.name, agent.id, exc_info=True)
        return InstallOutcome(False, target, _describe(e))
    return InstallOutcome(True, target)


def remove_installation(path: Path) -> InstallOutcome:
    """
    Delete an installed unit. For symlinks the store copy the link points at is
    deleted as well.
    """
    try:
        if path.is_symlink():
            resolved = path.resolve()
            path.unlink()
            if resolved.is_dir():
                shutil.rmtree(resolved)
            elif resolved.exists():
                resolved.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
    except OSError as e:
        return InstallOutcome(False, path, _describe(e))
    return InstallOutcome(True, path)


def is_valid_installation(path: Path, kind: UnitKind) -> bool:
    try:
        if kind is UnitKind.SKILL:
            return path.is_dir() and (path / MANIFEST_FILENAME).is_file()
        return path.is_file() and path.suffix.lower() == ".md"
    except OSError:
        return False
