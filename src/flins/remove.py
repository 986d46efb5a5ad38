from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from .context import RunContext
from .installer import InstallOutcome, remove_installation
from .prompts import Choice, PromptCancelled
from .state import Installation, TrackedUnit, UnitKey, collect_tracked
from .workspace import Scope


@dataclass(frozen=True)
class RemoveOptions:
    yes: bool = False


@dataclass(frozen=True)
class RemovedInstallation:
    installation: Installation
    outcome: InstallOutcome


@dataclass(frozen=True)
class RemoveResult:
    unit: TrackedUnit
    installations: tuple[RemovedInstallation, ...]

    @property
    def removed(self) -> int:
        return sum(1 for i in self.installations if i.outcome.success)

    @property
    def failed(self) -> int:
        return len(self.installations) - self.removed

    @property
    def success(self) -> bool:
        return self.failed == 0


@dataclass
class RemoveReport:
    results: list[RemoveResult] = field(default_factory=list)
    not_removable: list[str] = field(default_factory=list)  # tracked, but nothing valid on disk
    not_found: list[str] = field(default_factory=list)  # not tracked in any scope

    @property
    def ok(self) -> bool:
        return not self.not_removable and not self.not_found and all(r.success for r in self.results)


@dataclass(frozen=True)
class Candidate:
    unit: TrackedUnit
    installations: tuple[Installation, ...]


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def _candidates(ctx: RunContext) -> list[Candidate]:
    project, global_ = ctx.stores()
    return [Candidate(u, tuple(u.valid_installations())) for u in collect_tracked(project, global_)]


def _pick_by_name(names: Sequence[str], candidates: list[Candidate], report: RemoveReport) -> list[Candidate]:
    chosen: list[Candidate] = []
    for name in names:
        wanted = name.lower()
        matches = [c for c in candidates if c.unit.name == wanted or c.unit.key.encode() == wanted]
        if not matches:
            report.not_found.append(name)
            continue
        removable = [c for c in matches if c.installations]
        if not removable:
            report.not_removable.append(name)
        for c in removable:
            if c not in chosen:
                chosen.append(c)
    return chosen


def remove_candidate(candidate: Candidate) -> RemoveResult:
    """Delete every valid installation; drop the lockfile entry if anything was deleted."""
    removed = tuple(RemovedInstallation(i, remove_installation(i.path)) for i in candidate.installations)
    result = RemoveResult(candidate.unit, removed)
    if result.removed:
        candidate.unit.store.remove(candidate.unit.name, candidate.unit.kind)
    return result


async def perform_remove(names: Sequence[str] | None, options: RemoveOptions, ctx: RunContext) -> RemoveReport:
    report = RemoveReport()
    candidates = _candidates(ctx)
    if not candidates:
        ctx.echo("No skills tracked. Install one with `flins add <source>`.")
        report.not_found.extend(names or [])
        return report

    if names:
        selected = _pick_by_name(names, candidates, report)
        for name in report.not_found:
            ctx.echo(f"Not tracked: {name}")
        for name in report.not_removable:
            ctx.echo(f"No valid installations for {name} (run `flins clean` to drop it)")
    else:
        removable = [c for c in candidates if c.installations]
        if not removable:
            ctx.echo("No valid installations found")
            return report
        if options.yes:
            selected = removable
        else:
            selected = ctx.prompter.multiselect(
                "Select skills to remove",
                [Choice(c, c.unit.name, _plural(len(c.installations), "installation")) for c in removable],
                initial=removable,
            )

    if not selected:
        return report

    ctx.echo("Skills to remove:")
    for c in selected:
        ctx.echo(f"  {c.unit.name} ({c.unit.scope.value})")
        for inst in c.installations:
            ctx.echo(f"    -> {ctx.workspace.display(inst.path)}")

    if not options.yes and not ctx.prompter.confirm(f"Remove {_plural(len(selected), 'skill')}?"):
        raise PromptCancelled()

    for c in selected:
        report.results.append(remove_candidate(c))

    done = [r for r in report.results if r.removed]
    if done:
        ctx.echo(f"Removed {_plural(len(done), 'skill')}")
        for r in done:
            ctx.echo(f"  - {r.unit.name} ({_plural(r.removed, 'installation')})")
    for r in report.results:
        for item in r.installations:
            if not item.outcome.success:
                ctx.echo(f"  x {r.unit.name}: {ctx.workspace.display(item.installation.path)}: {item.outcome.error}")
    return report


def clean_orphaned(ctx: RunContext) -> dict[Scope, list[UnitKey]]:
    """Drop orphaned entries from the project lockfile (when present) and the global one."""
    project, global_ = ctx.stores()
    removed: dict[Scope, list[UnitKey]] = {}
    if project.exists():
        removed[Scope.PROJECT] = project.clean_orphaned()
    removed[Scope.GLOBAL] = global_.clean_orphaned()

    total = sum(len(v) for v in removed.values())
    if not total:
        ctx.echo("Nothing to clean")
    else:
        ctx.echo(f"Removed {total} orphaned {'entry' if total == 1 else 'entries'}")
        for scope, keys in removed.items():
            for key in keys:
                ctx.echo(f"  - {key.encode()} ({scope.value})")
    return removed


def list_installed(ctx: RunContext) -> dict[Scope, list[tuple[TrackedUnit, list[Installation]]]]:
    project, global_ = ctx.stores()
    grouped: dict[Scope, list[tuple[TrackedUnit, list[Installation]]]] = {Scope.PROJECT: [], Scope.GLOBAL: []}
    for unit in collect_tracked(project, global_):
        grouped[unit.scope].append((unit, unit.valid_installations()))
    return grouped


def display_installed(grouped: dict[Scope, list[tuple[TrackedUnit, list[Installation]]]], ctx: RunContext) -> None:
    if not any(grouped.values()):
        ctx.echo("No skills tracked. Install one with `flins add <source>`.")
        return
    for scope, title in ((Scope.PROJECT, "Project"), (Scope.GLOBAL, "Global")):
        units = grouped.get(scope) or []
        if not units:
            continue
        ctx.echo(f"{title} ({_plural(len(units), 'item')})")
        for unit, installations in units:
            agents = ", ".join(ctx.agents[i.agent].display_name for i in installations) or "no valid installations"
            ctx.echo(f"  {unit.key.encode()}  {unit.entry.url}@{unit.entry.branch}  [{agents}]")
