from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Sequence

from .client import FlinsError
from .context import RunContext
from .discovery import Unit, discover_units
from .installer import install_unit, materialize
from .prompts import Choice, PromptCancelled
from .state import Installation, TrackedUnit, collect_tracked, filter_by_names
from .workspace import UnitKind

logger = logging.getLogger(__name__)


class Status(str, Enum):
    LATEST = "latest"
    UPDATE_AVAILABLE = "update-available"
    ERROR = "error"
    ORPHANED = "orphaned"


@dataclass(frozen=True)
class InstallationInfo:
    installation: Installation
    valid: bool


@dataclass(frozen=True)
class StatusResult:
    unit: TrackedUnit
    status: Status
    current_commit: str
    latest_commit: str
    installations: tuple[InstallationInfo, ...] = ()
    error: str | None = None

    @property
    def valid_installations(self) -> list[Installation]:
        return [i.installation for i in self.installations if i.valid]

    @property
    def missing_installations(self) -> list[Installation]:
        return [i.installation for i in self.installations if not i.valid]


@dataclass(frozen=True)
class UpdateResult:
    unit: TrackedUnit
    success: bool
    updated: int = 0
    failed: int = 0
    error: str | None = None


@dataclass
class UpdateReport:
    statuses: list[StatusResult] = field(default_factory=list)
    results: list[UpdateResult] = field(default_factory=list)

    @property
    def orphaned(self) -> list[StatusResult]:
        return [s for s in self.statuses if s.status is Status.ORPHANED]

    @property
    def ok(self) -> bool:
        return all(r.success for r in self.results)


@dataclass(frozen=True)
class UpdateOptions:
    yes: bool = False


def _short(commit: str) -> str:
    return commit[:7]


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


async def check_unit(unit: TrackedUnit, ctx: RunContext) -> StatusResult:
    """Status of one tracked unit. Read-only; remote failures become an `error` status."""
    infos = tuple(InstallationInfo(i, i.is_valid()) for i in unit.scan().installations)
    commit = unit.entry.commit
    if not any(i.valid for i in infos):
        return StatusResult(unit, Status.ORPHANED, commit, commit, infos)

    try:
        latest = await ctx.fetcher.latest_commit(unit.entry.url, unit.entry.branch)
    except FlinsError as e:
        logger.debug("Latest commit lookup failed for %s", unit.key, exc_info=True)
        return StatusResult(unit, Status.ERROR, commit, commit, infos, error=str(e))

    status = Status.LATEST if latest == commit else Status.UPDATE_AVAILABLE
    return StatusResult(unit, status, commit, latest, infos)


def tracked_units(names: Sequence[str] | None, ctx: RunContext) -> list[TrackedUnit]:
    project, global_ = ctx.stores()
    return filter_by_names(collect_tracked(project, global_), list(names or []))


async def check_status(names: Sequence[str] | None, ctx: RunContext) -> list[StatusResult]:
    units = tracked_units(names, ctx)
    if not units:
        return []
    if len(units) == 1:
        ctx.echo(f"Checking {units[0].name}...")
    else:
        ctx.echo(f"Checking {_plural(len(units), 'skill')}...")
    return list(await asyncio.gather(*(check_unit(u, ctx) for u in units)))


def _find_unit(units: Sequence[Unit], name: str) -> Unit | None:
    for u in units:
        if u.name.lower() == name:
            return u
    return None


async def update_unit(status: StatusResult, ctx: RunContext) -> UpdateResult:
    """
    Re-clone the recorded branch and re-install into every installation that is
    still valid, keeping each one's strategy (symlink or copy). The new commit is
    persisted only when at least one installation was refreshed.
    """
    tracked = status.unit
    entry = tracked.entry
    updated = 0
    failed = 0
    clone: Path | None = None
    try:
        clone = await ctx.fetcher.clone(entry.url, entry.branch)
        new_commit = await ctx.fetcher.commit_hash(clone)
        found = discover_units(clone, entry.subpath, ctx.agents)
        pool: Sequence[Unit] = found.skills if tracked.kind is UnitKind.SKILL else found.commands
        unit = _find_unit(pool, tracked.name)
        if unit is None:
            raise FlinsError(f"{tracked.kind.value.capitalize()} {tracked.name} not found in repository")

        stored: Path | None = None
        for inst in tracked.valid_installations():
            agent = ctx.agents[inst.agent]
            symlink = inst.path.is_symlink()
            if symlink and stored is None:
                stored = materialize(unit, inst.scope, ctx.workspace)
            outcome = install_unit(unit, agent, inst.scope, ctx.workspace, symlink=symlink, store_path=stored)
            if outcome.success:
                updated += 1
            else:
                failed += 1
                logger.debug("Re-install of %s for %s failed: %s", tracked.name, agent.id, outcome.error)

        if updated:
            tracked.store.update_commit(tracked.name, tracked.kind, new_commit)
        return UpdateResult(tracked, success=failed == 0, updated=updated, failed=failed)
    except (FlinsError, OSError) as e:
        return UpdateResult(tracked, success=False, updated=updated, failed=failed + 1, error=str(e))
    finally:
        if clone is not None:
            await ctx.fetcher.cleanup(clone)


def _report_orphaned(orphaned: Sequence[StatusResult], ctx: RunContext) -> None:
    if not orphaned:
        return
    verb = "have" if len(orphaned) > 1 else "has"
    ctx.echo(f"{_plural(len(orphaned), 'skill')} {verb} no valid installations")
    for o in orphaned:
        ctx.echo(f"  o {o.unit.name} - files were removed (run `flins clean`)")


def _lookup_failures(errors: Sequence[StatusResult]) -> list[UpdateResult]:
    # A unit whose remote could not be checked counts as a failed update.
    return [UpdateResult(s.unit, success=False, failed=1, error=s.error) for s in errors]


def _report_failed(results: Sequence[UpdateResult], ctx: RunContext) -> None:
    failed = [r for r in results if not r.success]
    if not failed:
        return
    ctx.echo(f"Failed to update {_plural(len(failed), 'skill')}")
    for r in failed:
        ctx.echo(f"  x {r.unit.name}")
        if r.error:
            ctx.echo(f"    {r.error}")


async def perform_update(names: Sequence[str] | None, options: UpdateOptions, ctx: RunContext) -> UpdateReport:
    units = tracked_units(names, ctx)
    if not units:
        ctx.echo("No skills found to update")
        return UpdateReport()

    statuses = await check_status(names, ctx)
    report = UpdateReport(statuses=statuses)
    available = [s for s in statuses if s.status is Status.UPDATE_AVAILABLE]
    errors = [s for s in statuses if s.status is Status.ERROR]

    if not available:
        report.results.extend(_lookup_failures(errors))
        _report_failed(report.results, ctx)
        _report_orphaned(report.orphaned, ctx)
        latest = [s for s in statuses if s.status is Status.LATEST]
        if latest and not errors:
            ctx.echo("All skills are up to date")
        return report

    if options.yes:
        selected = available
    else:
        selected = ctx.prompter.multiselect(
            "Select skills to update",
            [
                Choice(s, s.unit.name, f"{_short(s.current_commit)} -> {_short(s.latest_commit)}")
                for s in available
            ],
            initial=available,
        )

    ctx.echo("Will update:")
    for s in selected:
        ctx.echo(f"  {s.unit.name}: {_short(s.current_commit)} -> {_short(s.latest_commit)}")
    if not options.yes and not ctx.prompter.confirm("Proceed with update?"):
        raise PromptCancelled()

    ctx.echo(f"Updating {_plural(len(selected), 'skill')}...")
    for s in selected:
        report.results.append(await update_unit(s, ctx))
    report.results.extend(_lookup_failures(errors))

    succeeded = [r for r in report.results if r.success and r.updated > 0]
    if succeeded:
        ctx.echo(f"Updated {_plural(len(succeeded), 'skill')}")
        for r in succeeded:
            ctx.echo(f"  + {r.unit.name} ({_plural(r.updated, 'installation')})")
    _report_failed(report.results, ctx)
    _report_orphaned(report.orphaned, ctx)
    ctx.echo("Skills updated successfully" if succeeded else "No skills were updated")
    return report


_STATUS_MARK = {
    Status.LATEST: "+",
    Status.UPDATE_AVAILABLE: "v",
    Status.ERROR: "x",
    Status.ORPHANED: "o",
}

_STATUS_TEXT = {
    Status.LATEST: "latest",
    Status.UPDATE_AVAILABLE: "update available",
    Status.ERROR: "error",
    Status.ORPHANED: "orphaned",
}


def display_status(results: Sequence[StatusResult], ctx: RunContext, *, verbose: bool = False) -> None:
    if not results:
        ctx.echo("No skills tracked. Install one with `flins add <source>`.")
        return

    ctx.echo("Skills status")
    for r in results:
        mark = _STATUS_MARK[r.status]
        label = r.unit.key.encode()
        if not verbose:
            count = len(r.valid_installations)
            suffix = f" ({_plural(count, 'installation')})" if count else ""
            ctx.echo(f"{mark} {label}{suffix} - {_STATUS_TEXT[r.status]}")
            continue

        ctx.echo(f"{mark} {label}")
        ctx.echo(f"    Status: {_STATUS_TEXT[r.status]}")
        ctx.echo(f"    Scope: {r.unit.scope.value}")
        if r.status is Status.UPDATE_AVAILABLE:
            ctx.echo(f"    Commit: {_short(r.current_commit)} -> {_short(r.latest_commit)}")
        elif r.status is Status.LATEST:
            ctx.echo(f"    Commit: {_short(r.current_commit)}")
        if r.error:
            ctx.echo(f"    {r.error}")
        if r.valid_installations:
            ctx.echo("    Installed in:")
            for inst in r.valid_installations:
                name = ctx.agents[inst.agent].display_name
                ctx.echo(f"      - {name}: {ctx.workspace.display(inst.path)}")
        if r.missing_installations:
            ctx.echo("    Missing installations:")
            for inst in r.missing_installations:
                name = ctx.agents[inst.agent].display_name
                ctx.echo(f"      - {name}: {ctx.workspace.display(inst.path)}")

    if not verbose:
        ctx.echo("Use --verbose or -v for detailed information")
