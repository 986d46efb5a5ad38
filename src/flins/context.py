from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Mapping, TextIO

from .agents import AGENTS, AgentDescriptor
from .git import GitFetcher, RepositoryFetcher
from .prompts import ConsolePrompter, Prompter
from .state import StateStore, open_stores
from .workspace import Scope, Workspace


@dataclass
class RunContext:
    """Everything a service needs from the outside world, passed in explicitly."""

    workspace: Workspace
    prompter: Prompter = field(default_factory=ConsolePrompter)
    fetcher: RepositoryFetcher = field(default_factory=GitFetcher)
    agents: Mapping[str, AgentDescriptor] = field(default_factory=lambda: AGENTS)
    silent: bool = False
    out: TextIO | None = None

    def echo(self, message: str = "") -> None:
        if self.silent:
            return
        print(message, file=self.out or sys.stdout)

    def store(self, scope: Scope) -> StateStore:
        return StateStore(scope, self.workspace, agents=self.agents)

    def stores(self) -> tuple[StateStore, StateStore]:
        return open_stores(self.workspace, self.agents)
