from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Protocol

from .client import FlinsError

logger = logging.getLogger(__name__)

CLONE_PREFIX = "flins-"


class GitError(FlinsError):
    pass


class RepositoryFetcher(Protocol):
    async def clone(self, url: str, branch: str | None = None) -> Path:
        ...

    async def latest_commit(self, url: str, branch: str) -> str:
        ...

    async def commit_hash(self, path: Path) -> str:
        ...

    async def cleanup(self, path: Path) -> None:
        ...


class GitFetcher:
    """Shells out to the `git` executable. Shallow clones land in fresh temp dirs."""

    def __init__(self, *, git: str = "git") -> None:
        self.git = git

    async def _run(self, *args: str, cwd: Path | None = None) -> str:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        logger.debug("git %s", " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git,
                *args,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GitError(f"Could not run git: {e}") from e
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", "replace").strip()
            raise GitError(f"git {args[0]} failed ({proc.returncode}): {detail or 'no output'}")
        return stdout.decode("utf-8", "replace")

    async def clone(self, url: str, branch: str | None = None) -> Path:
        dest = Path(tempfile.mkdtemp(prefix=CLONE_PREFIX))
        args = ["clone", "--depth", "1"]
        if branch:
            args += ["--branch", branch]
        args += [url, str(dest)]
        try:
            await self._run(*args)
        except GitError as e:
            await self.cleanup(dest)
            raise GitError(f"Failed to clone repository {url}: {e}") from e
        return dest

    async def latest_commit(self, url: str, branch: str) -> str:
        out = await self._run("ls-remote", url, f"refs/heads/{branch}")
        for line in out.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == f"refs/heads/{branch}":
                return parts[0]
        raise GitError(f"Branch {branch!r} not found on {url}")

    async def commit_hash(self, path: Path) -> str:
        out = await self._run("rev-parse", "HEAD", cwd=path)
        return out.strip()

    async def cleanup(self, path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning("Could not remove temporary clone %s: %s", path, e)
