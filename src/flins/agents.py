from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from .client import FlinsError
from .workspace import Scope, Workspace


class InvalidAgentError(FlinsError):
    pass


@dataclass(frozen=True)
class AgentDescriptor:
    id: str
    display_name: str
    config_dir: str  # existence means the agent is installed
    skills_dir: str  # relative to the project root
    global_skills_dir: str
    commands_dir: str | None = None
    global_commands_dir: str | None = None

    @property
    def supports_commands(self) -> bool:
        return self.commands_dir is not None and self.global_commands_dir is not None

    def skills_root(self, scope: Scope, workspace: Workspace) -> Path:
        raw = self.global_skills_dir if scope is Scope.GLOBAL else self.skills_dir
        return workspace.expand(raw, scope)

    def commands_root(self, scope: Scope, workspace: Workspace) -> Path | None:
        raw = self.global_commands_dir if scope is Scope.GLOBAL else self.commands_dir
        if raw is None:
            return None
        return workspace.expand(raw, scope)

    def is_installed(self, workspace: Workspace) -> bool:
        return workspace.expand(self.config_dir, Scope.GLOBAL).is_dir()


def _agent(
    id: str,
    display_name: str,
    config_dir: str,
    skills_dir: str,
    global_skills_dir: str,
    commands_dir: str | None = None,
    global_commands_dir: str | None = None,
) -> tuple[str, AgentDescriptor]:
    return id, AgentDescriptor(
        id=id,
        display_name=display_name,
        config_dir=config_dir,
        skills_dir=skills_dir,
        global_skills_dir=global_skills_dir,
        commands_dir=commands_dir,
        global_commands_dir=global_commands_dir,
    )


AGENTS: Mapping[str, AgentDescriptor] = dict(
    [
        _agent(
            "claude-code",
            "Claude Code",
            "~/.claude",
            ".claude/skills",
            "~/.claude/skills",
            ".claude/commands",
            "~/.claude/commands",
        ),
        _agent(
            "opencode",
            "OpenCode",
            "~/.config/opencode",
            ".opencode/skill",
            "~/.config/opencode/skill",
            ".opencode/command",
            "~/.config/opencode/command",
        ),
        _agent("codex", "Codex", "~/.codex", ".codex/skills", "~/.codex/skills"),
        _agent("cursor", "Cursor", "~/.cursor", ".cursor/skills", "~/.cursor/skills"),
        _agent("amp", "Amp", "~/.config/amp", ".agents/skills", "~/.config/agents/skills"),
        _agent("kilo", "Kilo Code", "~/.kilocode", ".kilocode/skills", "~/.kilocode/skills"),
        _agent("roo", "Roo Code", "~/.roo", ".roo/skills", "~/.roo/skills"),
        _agent("goose", "Goose", "~/.config/goose", ".goose/skills", "~/.config/goose/skills"),
        _agent("antigravity", "Antigravity", "~/.gemini/antigravity", ".agent/skills", "~/.gemini/antigravity/skills"),
        _agent("copilot", "GitHub Copilot", "~/.copilot", ".github/skills", "~/.copilot/skills"),
        _agent("gemini", "Gemini CLI", "~/.gemini", ".gemini/skills", "~/.gemini/skills"),
        _agent("windsurf", "Windsurf", "~/.codeium/windsurf", ".windsurf/skills", "~/.codeium/windsurf/skills"),
        _agent("trae", "Trae", "~/.trae", ".trae/skills", "~/.trae/skills"),
        _agent(
            "factory",
            "Factory Droid",
            "~/.factory",
            ".factory/skills",
            "~/.factory/skills",
            ".factory/commands",
            "~/.factory/commands",
        ),
        _agent("letta", "Letta", "~/.letta", ".skills", "~/.letta/skills"),
        _agent("qoder", "Qoder", "~/.qoder", ".qoder/skills", "~/.qoder/skills"),
        _agent("qwen", "Qwen Code", "~/.qwen", ".qwen/skills", "~/.qwen/skills"),
    ]
)


def get_agent(agent_id: str, agents: Mapping[str, AgentDescriptor] = AGENTS) -> AgentDescriptor:
    try:
        return agents[agent_id]
    except KeyError as e:
        raise InvalidAgentError(f"Unknown agent: {agent_id}. Valid agents: {', '.join(agents)}") from e


def validate_agent_ids(requested: Iterable[str], agents: Mapping[str, AgentDescriptor] = AGENTS) -> list[str]:
    ids = list(dict.fromkeys(a.strip() for a in requested if a.strip()))
    invalid = [a for a in ids if a not in agents]
    if invalid:
        raise InvalidAgentError(f"Invalid agents: {', '.join(invalid)}. Valid agents: {', '.join(agents)}")
    return ids


def command_capable(agent_ids: Iterable[str], agents: Mapping[str, AgentDescriptor] = AGENTS) -> list[str]:
    return [a for a in agent_ids if a in agents and agents[a].supports_commands]


async def detect_installed_agents(
    workspace: Workspace,
    agents: Mapping[str, AgentDescriptor] = AGENTS,
) -> list[str]:
    async def _check(agent: AgentDescriptor) -> bool:
        return agent.is_installed(workspace)

    found = await asyncio.gather(*(_check(a) for a in agents.values()))
    return [agent_id for agent_id, ok in zip(agents, found) if ok]
