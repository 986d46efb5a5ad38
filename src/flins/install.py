from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .agents import AgentDescriptor, command_capable, detect_installed_agents, validate_agent_ids
from .client import FlinsError
from .context import RunContext
from .discovery import Command, DiscoveryResult, Skill, Unit, discover_units
from .installer import InstallOutcome, UnsafePathError, install_unit, materialize, target_path
from .prompts import Choice, PromptCancelled
from .sources import SourceDescriptor, parse_source
from .workspace import Scope

logger = logging.getLogger(__name__)


class NoUnitsFoundError(FlinsError):
    pass


@dataclass(frozen=True)
class InstallOptions:
    scope: Scope | None = None  # None: ask, or project when auto-confirming
    agents: tuple[str, ...] = ()
    names: tuple[str, ...] = ()
    list_only: bool = False
    yes: bool = False
    symlink: bool = True


@dataclass(frozen=True)
class PairResult:
    unit: Unit
    agent: AgentDescriptor
    outcome: InstallOutcome

    @property
    def success(self) -> bool:
        return self.outcome.success


@dataclass(frozen=True)
class BranchChange:
    name: str
    previous: str
    current: str


@dataclass
class InstallReport:
    results: list[PairResult] = field(default_factory=list)
    branch_changes: list[BranchChange] = field(default_factory=list)
    source: SourceDescriptor | None = None
    scope: Scope | None = None
    listed: bool = False

    @property
    def succeeded(self) -> list[PairResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[PairResult]:
        return [r for r in self.results if not r.success]

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class Selection:
    skills: tuple[Skill, ...]
    skill_agents: tuple[str, ...]
    commands: tuple[Command, ...]
    command_agents: tuple[str, ...]
    scope: Scope

    def pairs(self) -> list[tuple[Unit, str]]:
        out: list[tuple[Unit, str]] = [(s, a) for s in self.skills for a in self.skill_agents]
        out.extend((c, a) for c in self.commands for a in self.command_agents)
        return out


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def _truncate(text: str, limit: int = 60) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _matches(unit: Unit, names: Sequence[str]) -> bool:
    wanted = {n.lower() for n in names}
    return unit.name.lower() in wanted


def _print_available(found: DiscoveryResult, ctx: RunContext) -> None:
    if found.skills:
        ctx.echo("Available skills:")
        for s in found.skills:
            ctx.echo(f"  {s.name}")
            ctx.echo(f"    {s.description}")
    if found.commands:
        ctx.echo("Available commands:")
        for c in found.commands:
            ctx.echo(f"  {c.name}")
            ctx.echo(f"    {c.summary}")


def _select_units(found: DiscoveryResult, options: InstallOptions, ctx: RunContext) -> tuple[list[Skill], list[Command]]:
    if options.names:
        skills = [s for s in found.skills if _matches(s, options.names)]
        commands = [c for c in found.commands if _matches(c, options.names)]
        if not skills and not commands:
            available = ", ".join([s.name for s in found.skills] + [c.name for c in found.commands])
            raise FlinsError(f"No matching skills found for: {', '.join(options.names)}. Available: {available}")
        return skills, commands

    if options.yes:
        if found.skills:
            ctx.echo(f"Installing all {_plural(len(found.skills), 'skill')}")
        if found.commands:
            ctx.echo(f"Installing all {_plural(len(found.commands), 'command')}")
        return list(found.skills), list(found.commands)

    skills: list[Skill] = []
    if found.skills:
        skills = ctx.prompter.multiselect(
            "Choose skills to add",
            [Choice(s, s.name, _truncate(s.description)) for s in found.skills],
            initial=[found.skills[0]] if len(found.skills) == 1 else (),
            required=not found.commands,
        )
    commands: list[Command] = []
    if found.commands:
        commands = ctx.prompter.multiselect(
            "Choose commands to add",
            [Choice(c, c.name, _truncate(c.summary, 55)) for c in found.commands],
            required=False,
        )
    if not skills and not commands:
        ctx.echo("Nothing selected")
        raise PromptCancelled()
    return skills, commands


async def _select_skill_agents(options: InstallOptions, ctx: RunContext) -> list[str]:
    if options.agents:
        return validate_agent_ids(options.agents, ctx.agents)

    detected = await detect_installed_agents(ctx.workspace, ctx.agents)
    logger.debug("Detected agents: %s", detected)
    if not detected:
        if options.yes:
            ctx.echo("Installing to all agents (none detected)")
            return list(ctx.agents)
        ctx.echo("No AI tools found. Choose where to install:")
        return ctx.prompter.multiselect(
            "Where should we install these?",
            [Choice(a.id, a.display_name) for a in ctx.agents.values()],
        )

    if options.yes:
        names = ", ".join(ctx.agents[a].display_name for a in detected)
        ctx.echo(f"Installing skills to: {names}")
        return detected

    return ctx.prompter.multiselect(
        "Where should we install these?",
        [Choice(a, ctx.agents[a].display_name, ctx.agents[a].skills_dir) for a in detected],
    )


def _select_command_agents(options: InstallOptions, ctx: RunContext) -> list[str]:
    capable = command_capable(ctx.agents, ctx.agents)
    if options.agents:
        requested = validate_agent_ids(options.agents, ctx.agents)
        chosen = command_capable(requested, ctx.agents)
        if not chosen:
            names = ", ".join(ctx.agents[a].display_name for a in capable)
            raise FlinsError(f"Commands are only supported by: {names}")
        dropped = [a for a in requested if a not in chosen]
        if dropped:
            ctx.echo(f"Skipping agents without command support: {', '.join(dropped)}")
        return chosen

    if options.yes:
        ctx.echo(f"Installing commands to: {', '.join(ctx.agents[a].display_name for a in capable)}")
        return capable

    return ctx.prompter.multiselect(
        "Select agents to install commands to",
        [Choice(a, ctx.agents[a].display_name, ctx.agents[a].commands_dir) for a in capable],
        initial=capable,
    )


def _select_scope(options: InstallOptions, ctx: RunContext) -> Scope:
    if options.scope is not None:
        return options.scope
    if options.yes:
        return Scope.PROJECT
    return ctx.prompter.select(
        "Where to install?",
        [
            Choice(Scope.PROJECT, "Project", "saved with this project"),
            Choice(Scope.GLOBAL, "Global", "available for all projects"),
        ],
    )


def _show_summary(selection: Selection, ctx: RunContext) -> None:
    ctx.echo("Installation summary")
    for unit, agent_ids in [(s, selection.skill_agents) for s in selection.skills] + [
        (c, selection.command_agents) for c in selection.commands
    ]:
        ctx.echo(f"  {unit.name} ({unit.kind.value})")
        for agent_id in agent_ids:
            agent = ctx.agents[agent_id]
            target = target_path(unit, agent, selection.scope, ctx.workspace)
            if target is None:
                continue
            status = " (will overwrite)" if target.exists() or target.is_symlink() else ""
            ctx.echo(f"    -> {agent.display_name}: {ctx.workspace.display(target)}{status}")


async def _install_pair(
    unit: Unit,
    agent: AgentDescriptor,
    scope: Scope,
    ctx: RunContext,
    *,
    symlink: bool,
    stored: Path | None,
) -> PairResult:
    # Blocking filesystem work, one worker thread per pair.
    outcome = await asyncio.to_thread(
        install_unit, unit, agent, scope, ctx.workspace, symlink=symlink, store_path=stored
    )
    return PairResult(unit=unit, agent=agent, outcome=outcome)


async def install_selection(
    selection: Selection,
    ctx: RunContext,
    *,
    symlink: bool,
) -> list[PairResult]:
    """
    Install every (unit, agent) pair concurrently. Each result carries its pair.

    In symlink mode each unit is materialized once before the fan-out; if that
    fails every pair of the unit fails with the same error.
    """
    stored: dict[str, Path] = {}
    failed: dict[str, str] = {}
    units: list[Unit] = [*selection.skills, *selection.commands]
    if symlink:
        for unit in units:
            try:
                stored[unit.key.encode()] = materialize(unit, selection.scope, ctx.workspace)
            except (OSError, UnsafePathError) as e:
                logger.debug("Materializing %s failed", unit.name, exc_info=True)
                failed[unit.key.encode()] = str(e) or e.__class__.__name__

    results: list[PairResult] = []
    jobs = []
    for unit, agent_id in selection.pairs():
        agent = ctx.agents[agent_id]
        key = unit.key.encode()
        if key in failed:
            results.append(PairResult(unit, agent, InstallOutcome(False, None, failed[key])))
            continue
        jobs.append(
            _install_pair(unit, agent, selection.scope, ctx, symlink=symlink, stored=stored.get(key))
        )
    results.extend(await asyncio.gather(*jobs))
    return results


def record_installs(
    results: Sequence[PairResult],
    source: SourceDescriptor,
    commit: str,
    scope: Scope,
    ctx: RunContext,
) -> list[BranchChange]:
    """Write one lockfile entry per unit that has at least one successful pair."""
    store = ctx.store(scope)
    branch = source.effective_branch
    changes: list[BranchChange] = []
    recorded: set[str] = set()
    for r in results:
        key = r.unit.key.encode()
        if not r.success or key in recorded:
            continue
        recorded.add(key)
        added = store.add(r.unit.name, r.unit.kind, source.url, branch, commit, source.subpath)
        if added.updated and added.previous_branch:
            changes.append(BranchChange(name=r.unit.name, previous=added.previous_branch, current=branch))
    return changes


def print_report(report: InstallReport, ctx: RunContext) -> None:
    if report.branch_changes:
        ctx.echo("Branch changed:")
        for change in report.branch_changes:
            ctx.echo(f"  {change.name}: {change.previous} -> {change.current}")

    succeeded = report.succeeded
    if succeeded:
        skills = sum(1 for r in succeeded if isinstance(r.unit, Skill))
        commands = len(succeeded) - skills
        parts = []
        if skills:
            parts.append(_plural(skills, "skill"))
        if commands:
            parts.append(_plural(commands, "command"))
        ctx.echo(f"Successfully installed {' and '.join(parts)}")
        for r in succeeded:
            ctx.echo(f"  + {r.unit.name} -> {r.agent.display_name}")
            if r.outcome.path is not None:
                ctx.echo(f"    {ctx.workspace.display(r.outcome.path)}")

    failed = report.failed
    if failed:
        ctx.echo(f"Failed to install {_plural(len(failed), 'item')}")
        for r in failed:
            ctx.echo(f"  x {r.unit.name} -> {r.agent.display_name}")
            ctx.echo(f"    {r.outcome.error}")

    ctx.echo("Done! Skills ready to use." if succeeded else "Nothing installed")


async def perform_install(source: str, options: InstallOptions, ctx: RunContext) -> InstallReport:
    """
    Resolve, clone, discover, select, install and record.

    Every prompt is answered before the first filesystem write, so a cancelled
    prompt leaves disk and lockfiles untouched. The temporary clone is always
    removed.
    """
    parsed = parse_source(source)
    ctx.echo(f"Source: {parsed.describe()}")

    clone = await ctx.fetcher.clone(parsed.url, parsed.branch)
    try:
        commit = await ctx.fetcher.commit_hash(clone)
        found = discover_units(clone, parsed.subpath, ctx.agents)
        if found.is_empty:
            raise NoUnitsFoundError(
                "No skills or commands found. A skill is a directory with a SKILL.md "
                "whose frontmatter sets both name and description."
            )
        counts = _plural(len(found.skills), "skill")
        if found.commands:
            counts += f" and {_plural(len(found.commands), 'command')}"
        ctx.echo(f"Found {counts}")

        if options.list_only:
            _print_available(found, ctx)
            ctx.echo("Use --skill <name> to install specific skills or commands")
            return InstallReport(source=parsed, listed=True)

        skills, commands = _select_units(found, options, ctx)
        skill_agents = await _select_skill_agents(options, ctx) if skills else []
        command_agents = _select_command_agents(options, ctx) if commands else []
        scope = _select_scope(options, ctx)
        selection = Selection(
            skills=tuple(skills),
            skill_agents=tuple(skill_agents),
            commands=tuple(commands),
            command_agents=tuple(command_agents),
            scope=scope,
        )

        _show_summary(selection, ctx)
        if not options.yes and not ctx.prompter.confirm("Ready to install?"):
            raise PromptCancelled()
        if commands:
            ctx.echo("Commands are experimental and may change")

        results = await install_selection(selection, ctx, symlink=options.symlink)
        changes = record_installs(results, parsed, commit, scope, ctx)
        report = InstallReport(results=results, branch_changes=changes, source=parsed, scope=scope)
        print_report(report, ctx)
        return report
    finally:
        await ctx.fetcher.cleanup(clone)
