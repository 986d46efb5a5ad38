from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from .agents import AGENTS, AgentDescriptor
from .workspace import Scope, UnitKind, Workspace

logger = logging.getLogger(__name__)

LOCKFILE_NAME = "skills.lock"
PROJECT_STATE_VERSION = "1.0.0"


@dataclass(frozen=True)
class UnitKey:
    kind: UnitKind
    name: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", self.name.lower())

    @classmethod
    def of(cls, name: str, kind: UnitKind | str) -> "UnitKey":
        return cls(kind=UnitKind(kind), name=name)

    def encode(self) -> str:
        return f"{self.kind.value}:{self.name}"

    @classmethod
    def decode(cls, raw: str) -> "UnitKey | None":
        kind_s, sep, name = raw.partition(":")
        if not sep or not name:
            return None
        try:
            kind = UnitKind(kind_s)
        except ValueError:
            return None
        return cls(kind=kind, name=name)

    def __str__(self) -> str:
        return self.encode()


@dataclass(frozen=True)
class StateEntry:
    url: str
    branch: str
    commit: str
    subpath: str | None = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"url": self.url, "branch": self.branch, "commit": self.commit}
        if self.subpath:
            out["subpath"] = self.subpath
        return out

    @classmethod
    def from_json(cls, raw: Any) -> "StateEntry | None":
        if not isinstance(raw, dict):
            return None
        url = raw.get("url")
        branch = raw.get("branch")
        commit = raw.get("commit")
        if not isinstance(url, str) or not isinstance(branch, str) or not isinstance(commit, str):
            return None
        subpath = raw.get("subpath")
        return cls(url=url, branch=branch, commit=commit, subpath=subpath if isinstance(subpath, str) and subpath else None)


@dataclass(frozen=True)
class Installation:
    agent: str
    scope: Scope
    kind: UnitKind
    path: Path

    def is_valid(self) -> bool:
        # Imported lazily: installer imports discovery, which imports this module.
        from .installer import is_valid_installation

        return is_valid_installation(self.path, self.kind)


@dataclass(frozen=True)
class InstallationScan:
    installations: tuple[Installation, ...]
    unreadable: tuple[Path, ...] = ()

    @property
    def valid(self) -> tuple[Installation, ...]:
        return tuple(i for i in self.installations if i.is_valid())


@dataclass(frozen=True)
class AddResult:
    updated: bool
    previous_branch: str | None = None


@dataclass
class LockState:
    entries: dict[UnitKey, StateEntry]
    last_update: str | None = None


@dataclass(frozen=True)
class LockfilePolicy:
    """How one scope's lockfile is located, laid out and kept."""

    scope: Scope
    locate: Callable[[Workspace], Path]
    header: Callable[[], dict[str, Any]]
    create_on_read: bool
    delete_when_empty: bool


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


PROJECT_LOCKFILE = LockfilePolicy(
    scope=Scope.PROJECT,
    locate=lambda ws: ws.cwd / LOCKFILE_NAME,
    header=lambda: {"version": PROJECT_STATE_VERSION},
    create_on_read=False,
    delete_when_empty=True,
)

GLOBAL_LOCKFILE = LockfilePolicy(
    scope=Scope.GLOBAL,
    locate=lambda ws: ws.store_dir(Scope.GLOBAL) / LOCKFILE_NAME,
    header=lambda: {"lastUpdate": _utc_now()},
    create_on_read=True,
    delete_when_empty=False,
)

POLICIES: Mapping[Scope, LockfilePolicy] = {Scope.PROJECT: PROJECT_LOCKFILE, Scope.GLOBAL: GLOBAL_LOCKFILE}


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)


class StateStore:
    """
    Provenance records for installed units in one scope.

    The lockfile only says where a unit came from. Whether it is still installed
    is always re-derived by scanning the agents' directories.
    """

    def __init__(
        self,
        scope: Scope,
        workspace: Workspace,
        *,
        agents: Mapping[str, AgentDescriptor] = AGENTS,
    ) -> None:
        self.scope = scope
        self.policy = POLICIES[scope]
        self.workspace = workspace
        self.agents = agents

    @property
    def path(self) -> Path:
        return self.policy.locate(self.workspace)

    def exists(self) -> bool:
        return self.path.is_file()

    def _empty(self) -> LockState:
        return LockState(entries={}, last_update=_utc_now() if self.scope is Scope.GLOBAL else None)

    def _parse(self, raw: Any) -> LockState | None:
        if not isinstance(raw, dict):
            return None
        skills = raw.get("skills")
        if not isinstance(skills, dict):
            return None
        if self.scope is Scope.PROJECT and not isinstance(raw.get("version"), str):
            return None
        entries: dict[UnitKey, StateEntry] = {}
        for key_s, value in skills.items():
            key = UnitKey.decode(key_s) if isinstance(key_s, str) else None
            entry = StateEntry.from_json(value)
            if key is None or entry is None:
                logger.warning("Ignoring malformed entry %r in %s", key_s, self.path)
                continue
            entries[key] = entry
        last_update = raw.get("lastUpdate")
        return LockState(entries=entries, last_update=last_update if isinstance(last_update, str) else None)

    def load(self) -> LockState | None:
        """
        Read the lockfile. Never raises.

        A missing project lockfile yields None and is not created. A missing
        global lockfile is created empty. Corrupt files read as empty state.
        """
        path = self.path
        if not path.exists():
            if not self.policy.create_on_read:
                return None
            state = self._empty()
            try:
                self._write(state)
            except OSError as e:
                logger.warning("Could not create %s: %s", path, e)
            return state

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Unreadable lockfile %s, treating as empty: %s", path, e)
            raw = None
        state = self._parse(raw)
        if state is None:
            if raw is not None:
                logger.warning("Malformed lockfile %s, treating as empty", path)
            return None if not self.policy.create_on_read else self._empty()
        return state

    def _write(self, state: LockState) -> None:
        payload = self.policy.header()
        payload["skills"] = {k.encode(): state.entries[k].to_json() for k in state.entries}
        _write_json_atomic(self.path, payload)

    def save(self, state: LockState) -> None:
        if not state.entries and self.policy.delete_when_empty:
            if self.path.exists():
                self.path.unlink()
            return
        self._write(state)

    def entries(self) -> dict[UnitKey, StateEntry]:
        state = self.load()
        return dict(state.entries) if state else {}

    def get(self, name: str, kind: UnitKind | str) -> StateEntry | None:
        return self.entries().get(UnitKey.of(name, kind))

    def add(
        self,
        name: str,
        kind: UnitKind | str,
        url: str,
        branch: str,
        commit: str,
        subpath: str | None = None,
    ) -> AddResult:
        state = self.load() or self._empty()
        key = UnitKey.of(name, kind)
        existing = state.entries.get(key)

        if existing is None:
            state.entries[key] = StateEntry(url=url, branch=branch, commit=commit, subpath=subpath)
            self.save(state)
            return AddResult(updated=False)

        previous_branch = existing.branch if existing.branch != branch else None
        state.entries[key] = StateEntry(
            url=url,
            branch=branch,
            commit=commit,
            subpath=subpath or existing.subpath,
        )
        self.save(state)
        return AddResult(updated=previous_branch is not None, previous_branch=previous_branch)

    def update_commit(self, name: str, kind: UnitKind | str, commit: str) -> bool:
        state = self.load()
        key = UnitKey.of(name, kind)
        if state is None or key not in state.entries:
            return False
        old = state.entries[key]
        state.entries[key] = StateEntry(url=old.url, branch=old.branch, commit=commit, subpath=old.subpath)
        self.save(state)
        return True

    def remove(self, name: str, kind: UnitKind | str) -> bool:
        state = self.load()
        key = UnitKey.of(name, kind)
        if state is None or key not in state.entries:
            return False
        del state.entries[key]
        self.save(state)
        return True

    def scan_installations(self, name: str, kind: UnitKind | str) -> InstallationScan:
        kind = UnitKind(kind)
        wanted = name.lower()
        found: list[Installation] = []
        unreadable: list[Path] = []
        for agent in self.agents.values():
            if kind is UnitKind.SKILL:
                root = agent.skills_root(self.scope, self.workspace)
            else:
                root = agent.commands_root(self.scope, self.workspace)
            if root is None or not root.exists():
                continue
            try:
                children = sorted(root.iterdir(), key=lambda p: p.name)
            except OSError as e:
                logger.debug("Cannot scan %s: %s", root, e)
                unreadable.append(root)
                continue
            for child in children:
                if kind is UnitKind.SKILL:
                    matched = child.name.lower() == wanted and (child.is_dir() or child.is_symlink())
                else:
                    stem = child.name[:-3] if child.name.lower().endswith(".md") else child.name
                    matched = stem.lower() == wanted
                if matched:
                    found.append(Installation(agent=agent.id, scope=self.scope, kind=kind, path=child))
                    break
        return InstallationScan(installations=tuple(found), unreadable=tuple(unreadable))

    def find_installations(self, name: str, kind: UnitKind | str) -> list[Installation]:
        return list(self.scan_installations(name, kind).installations)

    def clean_orphaned(self) -> list[UnitKey]:
        """
        Drop entries without a single valid installation. Entries whose scan hit an
        unreadable directory are kept, since their presence cannot be ruled out.
        """
        state = self.load()
        if state is None:
            return []
        orphaned: list[UnitKey] = []
        for key in list(state.entries):
            scan = self.scan_installations(key.name, key.kind)
            if scan.valid or scan.unreadable:
                continue
            orphaned.append(key)
        if not orphaned:
            return []
        for key in orphaned:
            del state.entries[key]
        self.save(state)
        logger.debug("Removed orphaned entries from %s: %s", self.path, [k.encode() for k in orphaned])
        return orphaned


@dataclass(frozen=True)
class TrackedUnit:
    key: UnitKey
    entry: StateEntry
    store: StateStore

    @property
    def scope(self) -> Scope:
        return self.store.scope

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def kind(self) -> UnitKind:
        return self.key.kind

    def scan(self) -> InstallationScan:
        return self.store.scan_installations(self.key.name, self.key.kind)

    def valid_installations(self) -> list[Installation]:
        return list(self.scan().valid)


def open_stores(
    workspace: Workspace,
    agents: Mapping[str, AgentDescriptor] = AGENTS,
) -> tuple[StateStore, StateStore]:
    return (
        StateStore(Scope.PROJECT, workspace, agents=agents),
        StateStore(Scope.GLOBAL, workspace, agents=agents),
    )


def collect_tracked(project: StateStore, global_: StateStore) -> list[TrackedUnit]:
    """All tracked units, project scope first. A global entry with the same key is shadowed."""
    out: list[TrackedUnit] = []
    seen: set[UnitKey] = set()
    for store in (project, global_):
        for key, entry in store.entries().items():
            if key in seen:
                continue
            seen.add(key)
            out.append(TrackedUnit(key=key, entry=entry, store=store))
    return out


def filter_by_names(units: list[TrackedUnit], names: list[str] | None) -> list[TrackedUnit]:
    if not names:
        return list(units)
    wanted = {n.lower() for n in names}
    return [u for u in units if u.name in wanted or u.key.encode() in wanted]
