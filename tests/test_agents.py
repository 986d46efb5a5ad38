import tempfile
import unittest
from pathlib import Path

from flins.agents import (
    AGENTS,
    InvalidAgentError,
    command_capable,
    detect_installed_agents,
    get_agent,
    validate_agent_ids,
)
from flins.workspace import Scope, Workspace


class TestRegistry(unittest.TestCase):
    def test_registry_shape(self) -> None:
        self.assertEqual(len(AGENTS), 17)
        self.assertEqual(list(AGENTS)[:4], ["claude-code", "opencode", "codex", "cursor"])
        self.assertEqual(
            [a for a in AGENTS if AGENTS[a].supports_commands],
            ["claude-code", "opencode", "factory"],
        )

    def test_roots_follow_scope(self) -> None:
        ws = Workspace(home=Path("/home/u"), cwd=Path("/work/p"))
        claude = get_agent("claude-code")
        self.assertEqual(claude.skills_root(Scope.PROJECT, ws), Path("/work/p/.claude/skills"))
        self.assertEqual(claude.skills_root(Scope.GLOBAL, ws), Path("/home/u/.claude/skills"))
        self.assertEqual(claude.commands_root(Scope.GLOBAL, ws), Path("/home/u/.claude/commands"))
        self.assertIsNone(get_agent("cursor").commands_root(Scope.PROJECT, ws))

    def test_unknown_agents(self) -> None:
        with self.assertRaises(InvalidAgentError):
            get_agent("vim")
        with self.assertRaises(InvalidAgentError) as ctx:
            validate_agent_ids(["cursor", "vim", "emacs"])
        self.assertIn("vim, emacs", str(ctx.exception))

    def test_validate_dedupes_in_order(self) -> None:
        self.assertEqual(validate_agent_ids(["cursor", " codex ", "cursor", ""]), ["cursor", "codex"])

    def test_command_capable(self) -> None:
        self.assertEqual(command_capable(["cursor", "factory", "claude-code", "nope"]), ["factory", "claude-code"])


class TestDetection(unittest.IsolatedAsyncioTestCase):
    async def test_detects_by_config_dir_in_registry_order(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            home = Path(tmp) / "home"
            (home / ".cursor").mkdir(parents=True)
            (home / ".claude").mkdir()
            (home / ".codex").write_text("not a dir\n", encoding="utf-8")
            ws = Workspace(home=home, cwd=Path(tmp))
            found = await detect_installed_agents(ws)
        self.assertEqual(found, ["claude-code", "cursor"])


if __name__ == "__main__":
    unittest.main()
