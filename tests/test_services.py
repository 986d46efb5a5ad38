import io
import shutil
import tempfile
import threading
import unittest
from pathlib import Path
from typing import Any
from unittest.mock import patch

from flins.agents import AGENTS, InvalidAgentError
from flins.context import RunContext
from flins.client import FlinsError
from flins.git import GitError
from flins.install import BranchChange, InstallOptions, NoUnitsFoundError, perform_install
from flins.installer import InstallOutcome, install_unit
from flins.prompts import PromptCancelled
from flins.remove import RemoveOptions, clean_orphaned, list_installed, perform_remove
from flins.state import StateStore, UnitKey
from flins.update import Status, UpdateOptions, check_status, perform_update
from flins.workspace import Scope, UnitKind, Workspace

TEST_AGENTS = {k: AGENTS[k] for k in ("claude-code", "cursor")}
REPO_URL = "https://github.com/acme/widgets.git"


class FakeFetcher:
    def __init__(self, template: Path, commit: str = "c1") -> None:
        self.template = template
        self.commit = commit
        self.latest: dict[str, str] = {}
        self.failing: set[str] = set()
        self.cloned: list[tuple[str, str | None]] = []
        self.cleaned: list[Path] = []

    async def clone(self, url: str, branch: str | None = None) -> Path:
        self.cloned.append((url, branch))
        dest = Path(tempfile.mkdtemp(prefix="flins-test-"))
        shutil.copytree(self.template, dest, dirs_exist_ok=True)
        return dest

    async def latest_commit(self, url: str, branch: str) -> str:
        if url in self.failing:
            raise GitError("network down")
        return self.latest.get(url, self.commit)

    async def commit_hash(self, path: Path) -> str:
        return self.commit

    async def cleanup(self, path: Path) -> None:
        self.cleaned.append(path)
        shutil.rmtree(path, ignore_errors=True)


class ScriptedPrompter:
    """Answers prompts in order. Multiselect answers are lists of labels."""

    def __init__(self, *answers: Any) -> None:
        self.answers = list(answers)
        self.asked: list[str] = []

    def _next(self, message: str) -> Any:
        self.asked.append(message)
        if not self.answers:
            raise AssertionError(f"unexpected prompt: {message}")
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer

    def multiselect(self, message, choices, *, initial=(), required=True):
        answer = self._next(message)
        return [c.value for c in choices if c.label in answer]

    def select(self, message, choices):
        answer = self._next(message)
        return next(c.value for c in choices if c.label == answer)

    def confirm(self, message, *, default=True):
        return self._next(message)


def _write_skill(root: Path, name: str) -> None:
    d = root / "skills" / name
    d.mkdir(parents=True)
    (d / "SKILL.md").write_text(f"---\nname: {name}\ndescription: The {name} skill\n---\n", encoding="utf-8")
    (d / "notes.md").write_text(f"{name} notes\n", encoding="utf-8")


class _ServiceCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.ws = Workspace(home=base / "home", cwd=base / "proj")
        self.ws.home.mkdir()
        self.ws.cwd.mkdir()
        self.repo = base / "repo"
        _write_skill(self.repo, "alpha")
        _write_skill(self.repo, "beta")
        (self.repo / "commands").mkdir()
        (self.repo / "commands" / "review.md").write_text("---\ndescription: Review\n---\n", encoding="utf-8")
        self.fetcher = FakeFetcher(self.repo)
        self.out = io.StringIO()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def ctx(self, *answers: Any) -> RunContext:
        return RunContext(
            workspace=self.ws,
            prompter=ScriptedPrompter(*answers),
            fetcher=self.fetcher,
            agents=TEST_AGENTS,
            out=self.out,
        )

    def store(self, scope: Scope) -> StateStore:
        return StateStore(scope, self.ws, agents=TEST_AGENTS)

    async def install(self, source: str = "acme/widgets", **kw: Any):
        opts = dict(agents=("claude-code",), yes=True)
        opts.update(kw)
        return await perform_install(source, InstallOptions(**opts), self.ctx())


class TestInstall(_ServiceCase):
    async def test_auto_confirm_installs_every_pair_and_records_state(self) -> None:
        report = await perform_install(
            "acme/widgets", InstallOptions(agents=("claude-code", "cursor"), yes=True), self.ctx()
        )
        self.assertEqual(len(report.results), 5)  # 2 skills x 2 agents + 1 command x claude-code
        self.assertTrue(report.ok)
        self.assertEqual(report.scope, Scope.PROJECT)
        pairs = {(r.unit.name, r.agent.id) for r in report.results}
        self.assertIn(("review", "claude-code"), pairs)
        self.assertNotIn(("review", "cursor"), pairs)

        entries = self.store(Scope.PROJECT).entries()
        self.assertEqual(
            set(entries),
            {UnitKey(UnitKind.SKILL, "alpha"), UnitKey(UnitKind.SKILL, "beta"), UnitKey(UnitKind.COMMAND, "review")},
        )
        alpha = entries[UnitKey(UnitKind.SKILL, "alpha")]
        self.assertEqual((alpha.url, alpha.branch, alpha.commit), (REPO_URL, "main", "c1"))

        link = self.ws.cwd / ".cursor" / "skills" / "alpha"
        self.assertTrue(link.is_symlink())
        self.assertEqual(link.resolve(), (self.ws.cwd / ".flins" / "skills" / "alpha").resolve())
        self.assertEqual(len(self.fetcher.cleaned), 1)
        self.assertFalse(self.fetcher.cleaned[0].exists())

    async def test_list_only_touches_nothing(self) -> None:
        report = await self.install(list_only=True)
        self.assertTrue(report.listed)
        self.assertEqual(report.results, [])
        self.assertFalse(self.store(Scope.PROJECT).exists())
        self.assertIn("alpha", self.out.getvalue())
        self.assertEqual(len(self.fetcher.cleaned), 1)

    async def test_no_units_found(self) -> None:
        self.fetcher.template = self.ws.home  # empty tree
        with self.assertRaises(NoUnitsFoundError):
            await self.install()
        self.assertEqual(len(self.fetcher.cleaned), 1)

    async def test_invalid_agent(self) -> None:
        with self.assertRaises(InvalidAgentError):
            await self.install(agents=("nope",))
        self.assertEqual(len(self.fetcher.cleaned), 1)

    async def test_partial_failure_only_records_successes(self) -> None:
        def flaky(unit, agent, scope, workspace, **kw):
            if unit.name == "beta" or agent.id == "cursor":
                return InstallOutcome(False, None, "disk full")
            return install_unit(unit, agent, scope, workspace, **kw)

        with patch("flins.install.install_unit", side_effect=flaky):
            report = await self.install(agents=("claude-code", "cursor"), names=("alpha", "beta"), symlink=False)

        self.assertEqual(len(report.succeeded), 1)
        self.assertEqual(len(report.failed), 3)
        self.assertFalse(report.ok)
        self.assertEqual(list(self.store(Scope.PROJECT).entries()), [UnitKey(UnitKind.SKILL, "alpha")])
        self.assertIn("Failed to install 3 items", self.out.getvalue())

    async def test_cancelled_prompt_mutates_nothing(self) -> None:
        ctx = self.ctx(PromptCancelled())
        with self.assertRaises(PromptCancelled):
            await perform_install("acme/widgets", InstallOptions(), ctx)
        self.assertFalse(self.store(Scope.PROJECT).exists())
        self.assertFalse((self.ws.cwd / ".claude").exists())
        self.assertFalse((self.ws.cwd / ".flins").exists())
        self.assertEqual(len(self.fetcher.cleaned), 1)

    async def test_declined_confirmation_mutates_nothing(self) -> None:
        ctx = self.ctx(["alpha"], [], ["Cursor"], "Project", False)
        with self.assertRaises(PromptCancelled):
            await perform_install("acme/widgets", InstallOptions(), ctx)
        self.assertFalse((self.ws.cwd / ".cursor").exists())
        self.assertFalse(self.store(Scope.PROJECT).exists())

    async def test_interactive_global_install(self) -> None:
        ctx = self.ctx(["alpha"], [], ["Claude Code"], "Global", True)
        report = await perform_install("acme/widgets", InstallOptions(), ctx)
        self.assertEqual(
            ctx.prompter.asked,
            ["Choose skills to add", "Choose commands to add", "Where should we install these?", "Where to install?", "Ready to install?"],
        )
        self.assertTrue(report.ok)
        self.assertEqual(report.scope, Scope.GLOBAL)
        self.assertTrue((self.ws.home / ".claude" / "skills" / "alpha" / "SKILL.md").is_file())
        self.assertIsNotNone(self.store(Scope.GLOBAL).get("alpha", UnitKind.SKILL))
        self.assertFalse(self.store(Scope.PROJECT).exists())

    async def test_no_detected_agents_with_auto_confirm_targets_all(self) -> None:
        report = await self.install(agents=(), names=("alpha",))
        self.assertEqual({r.agent.id for r in report.results}, set(TEST_AGENTS))

    async def test_detected_agents_are_used(self) -> None:
        (self.ws.home / ".cursor").mkdir()
        report = await self.install(agents=(), names=("alpha",))
        self.assertEqual([r.agent.id for r in report.results], ["cursor"])

    async def test_reinstall_is_idempotent(self) -> None:
        await self.install(names=("alpha",))
        before = self.store(Scope.PROJECT).entries()
        report = await self.install(names=("alpha",))
        self.assertTrue(report.ok)
        self.assertEqual(report.branch_changes, [])
        self.assertEqual(self.store(Scope.PROJECT).entries(), before)

    async def test_repository_skill_cannot_replace_user_directory(self) -> None:
        victim = self.ws.cwd / "victim"
        victim.mkdir()
        (victim / "precious.txt").write_text("keep\n", encoding="utf-8")
        evil = self.repo / "skills" / "evil"
        evil.mkdir()
        (evil / "SKILL.md").write_text("---\nname: ../../victim\ndescription: x\n---\n", encoding="utf-8")

        with self.assertLogs("flins.discovery", level="WARNING"):
            with self.assertRaises(FlinsError):
                await self.install(names=("../../victim",))
        with self.assertLogs("flins.discovery", level="WARNING"):
            report = await self.install()

        self.assertTrue(report.ok)
        self.assertNotIn("../../victim", {r.unit.name for r in report.results})
        self.assertFalse(victim.is_symlink())
        self.assertTrue((victim / "precious.txt").is_file())

    async def test_pairs_are_installed_off_the_event_loop_thread(self) -> None:
        threads: set[int] = set()

        def recording(*args, **kw):
            threads.add(threading.get_ident())
            return install_unit(*args, **kw)

        with patch("flins.install.install_unit", side_effect=recording):
            report = await self.install(names=("alpha",), agents=("claude-code", "cursor"))
        self.assertTrue(report.ok)
        self.assertTrue(threads)
        self.assertNotIn(threading.get_ident(), threads)

    async def test_branch_change_is_reported_once_per_unit(self) -> None:
        await self.install(names=("alpha",), agents=("claude-code", "cursor"))
        report = await self.install(
            "https://github.com/acme/widgets/tree/beta", names=("alpha",), agents=("claude-code", "cursor")
        )
        self.assertEqual(self.fetcher.cloned[-1], (REPO_URL, "beta"))
        self.assertEqual(report.branch_changes, [BranchChange("alpha", "main", "beta")])
        self.assertEqual(self.store(Scope.PROJECT).get("alpha", UnitKind.SKILL).branch, "beta")


class TestUpdate(_ServiceCase):
    async def test_update_available_then_applied(self) -> None:
        await self.install(names=("alpha",))
        self.fetcher.commit = "c2"

        statuses = await check_status(None, self.ctx())
        self.assertEqual([s.status for s in statuses], [Status.UPDATE_AVAILABLE])
        self.assertEqual(self.store(Scope.PROJECT).get("alpha", UnitKind.SKILL).commit, "c1")

        report = await perform_update(None, UpdateOptions(yes=True), self.ctx())
        self.assertTrue(report.ok)
        self.assertEqual([(r.unit.name, r.updated) for r in report.results], [("alpha", 1)])
        self.assertEqual(self.store(Scope.PROJECT).get("alpha", UnitKind.SKILL).commit, "c2")
        self.assertEqual(self.fetcher.cloned[-1], (REPO_URL, "main"))
        self.assertTrue((self.ws.cwd / ".claude" / "skills" / "alpha").is_symlink())

    async def test_latest(self) -> None:
        await self.install(names=("alpha",))
        statuses = await check_status(["alpha"], self.ctx())
        self.assertEqual(statuses[0].status, Status.LATEST)
        report = await perform_update(None, UpdateOptions(yes=True), self.ctx())
        self.assertEqual(report.results, [])

    async def test_remote_error_leaves_state_untouched(self) -> None:
        await self.install(names=("alpha", "beta"))
        self.fetcher.commit = "c2"
        self.fetcher.failing.add(REPO_URL)
        statuses = await check_status(None, self.ctx())
        self.assertEqual({s.status for s in statuses}, {Status.ERROR})
        self.assertEqual(statuses[0].error, "network down")
        self.assertEqual(self.store(Scope.PROJECT).get("alpha", UnitKind.SKILL).commit, "c1")

    async def test_remote_error_fails_the_batch_next_to_an_update(self) -> None:
        other_url = "https://github.com/acme/other.git"
        await self.install(names=("alpha",))
        await self.install("acme/other", names=("beta",))
        self.fetcher.commit = "c2"
        self.fetcher.failing.add(other_url)

        report = await perform_update(None, UpdateOptions(yes=True), self.ctx())
        self.assertEqual(
            sorted((s.unit.name, s.status) for s in report.statuses),
            [("alpha", Status.UPDATE_AVAILABLE), ("beta", Status.ERROR)],
        )
        self.assertFalse(report.ok)
        self.assertEqual(
            [(r.unit.name, r.success, r.error) for r in report.results],
            [("alpha", True, None), ("beta", False, "network down")],
        )
        self.assertEqual(self.store(Scope.PROJECT).get("alpha", UnitKind.SKILL).commit, "c2")
        self.assertEqual(self.store(Scope.PROJECT).get("beta", UnitKind.SKILL).commit, "c1")
        output = self.out.getvalue()
        self.assertIn("Failed to update 1 skill", output)
        self.assertIn("  x beta", output)

    async def test_remote_error_alone_fails_the_batch(self) -> None:
        await self.install(names=("alpha",))
        self.fetcher.failing.add(REPO_URL)
        report = await perform_update(None, UpdateOptions(yes=True), self.ctx())
        self.assertFalse(report.ok)
        self.assertEqual([r.unit.name for r in report.results], ["alpha"])
        self.assertNotIn("All skills are up to date", self.out.getvalue())

    async def test_failed_reinstall_keeps_recorded_commit(self) -> None:
        await self.install(names=("alpha",))
        self.fetcher.commit = "c2"
        with patch("flins.update.install_unit", return_value=InstallOutcome(False, None, "disk full")):
            report = await perform_update(None, UpdateOptions(yes=True), self.ctx())
        self.assertFalse(report.ok)
        self.assertEqual(report.results[0].failed, 1)
        self.assertEqual(self.store(Scope.PROJECT).get("alpha", UnitKind.SKILL).commit, "c1")

    async def test_orphaned_is_reported_separately(self) -> None:
        await self.install(names=("alpha",), symlink=False)
        shutil.rmtree(self.ws.cwd / ".claude" / "skills" / "alpha")
        clones = len(self.fetcher.cloned)

        report = await perform_update(None, UpdateOptions(yes=True), self.ctx())
        self.assertEqual([s.status for s in report.statuses], [Status.ORPHANED])
        self.assertEqual(len(report.orphaned), 1)
        self.assertEqual(report.results, [])
        self.assertEqual(len(self.fetcher.cloned), clones)
        output = self.out.getvalue()
        self.assertIn("no valid installations", output)
        self.assertNotIn("All skills are up to date", output)

    async def test_update_selection_can_be_cancelled(self) -> None:
        await self.install(names=("alpha",))
        self.fetcher.commit = "c2"
        with self.assertRaises(PromptCancelled):
            await perform_update(None, UpdateOptions(), self.ctx(["alpha"], False))
        self.assertEqual(self.store(Scope.PROJECT).get("alpha", UnitKind.SKILL).commit, "c1")


class TestRemove(_ServiceCase):
    async def test_remove_by_name(self) -> None:
        await self.install(names=("alpha", "beta"), agents=("claude-code", "cursor"))
        report = await perform_remove(["alpha"], RemoveOptions(yes=True), self.ctx())
        self.assertTrue(report.ok)
        self.assertEqual(report.results[0].removed, 2)
        self.assertFalse((self.ws.cwd / ".claude" / "skills" / "alpha").is_symlink())
        self.assertFalse((self.ws.cwd / ".flins" / "skills" / "alpha").exists())
        self.assertEqual(list(self.store(Scope.PROJECT).entries()), [UnitKey(UnitKind.SKILL, "beta")])

    async def test_removing_everything_deletes_project_lockfile(self) -> None:
        await self.install(names=("alpha",))
        await perform_remove(["alpha"], RemoveOptions(yes=True), self.ctx())
        self.assertFalse(self.store(Scope.PROJECT).exists())

    async def test_names_without_valid_installations_are_reported(self) -> None:
        self.store(Scope.PROJECT).add("ghost", UnitKind.SKILL, REPO_URL, "main", "c1")
        report = await perform_remove(["ghost", "unknown"], RemoveOptions(yes=True), self.ctx())
        self.assertEqual(report.not_removable, ["ghost"])
        self.assertEqual(report.not_found, ["unknown"])
        self.assertFalse(report.ok)
        self.assertIsNotNone(self.store(Scope.PROJECT).get("ghost", UnitKind.SKILL))

    async def test_interactive_selection(self) -> None:
        await self.install(names=("alpha", "beta"))
        ctx = self.ctx(["beta"], True)
        report = await perform_remove([], RemoveOptions(), ctx)
        self.assertEqual([r.unit.name for r in report.results], ["beta"])
        self.assertIsNotNone(self.store(Scope.PROJECT).get("alpha", UnitKind.SKILL))

    async def test_project_entry_shadows_global(self) -> None:
        self.store(Scope.GLOBAL).add("alpha", UnitKind.SKILL, REPO_URL, "main", "g1")
        await self.install(names=("alpha",))
        report = await perform_remove(["alpha"], RemoveOptions(yes=True), self.ctx())
        self.assertEqual(len(report.results), 1)
        self.assertEqual(report.results[0].unit.scope, Scope.PROJECT)
        self.assertIsNotNone(self.store(Scope.GLOBAL).get("alpha", UnitKind.SKILL))


class TestCleanAndList(_ServiceCase):
    async def test_clean_orphaned_both_scopes(self) -> None:
        await self.install(names=("alpha",))
        self.store(Scope.PROJECT).add("ghost", UnitKind.SKILL, REPO_URL, "main", "c1")
        self.store(Scope.GLOBAL).add("gone", UnitKind.COMMAND, REPO_URL, "main", "c1")

        removed = clean_orphaned(self.ctx())
        self.assertEqual(removed[Scope.PROJECT], [UnitKey(UnitKind.SKILL, "ghost")])
        self.assertEqual(removed[Scope.GLOBAL], [UnitKey(UnitKind.COMMAND, "gone")])
        self.assertIsNotNone(self.store(Scope.PROJECT).get("alpha", UnitKind.SKILL))

        again = clean_orphaned(self.ctx())
        self.assertEqual(sum(len(v) for v in again.values()), 0)

    async def test_clean_without_project_lockfile(self) -> None:
        removed = clean_orphaned(self.ctx())
        self.assertNotIn(Scope.PROJECT, removed)
        self.assertFalse(self.store(Scope.PROJECT).exists())

    async def test_list_installed_groups_by_scope(self) -> None:
        await self.install(names=("alpha",))
        await self.install(names=("beta",), scope=Scope.GLOBAL)
        grouped = list_installed(self.ctx())
        self.assertEqual([u.name for u, _ in grouped[Scope.PROJECT]], ["alpha"])
        self.assertEqual([u.name for u, _ in grouped[Scope.GLOBAL]], ["beta"])
        self.assertEqual([i.agent for i in grouped[Scope.GLOBAL][0][1]], ["claude-code"])


if __name__ == "__main__":
    unittest.main()
