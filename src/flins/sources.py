from __future__ import annotations

import re
from dataclasses import dataclass

DEFAULT_BRANCH = "main"

_GITHUB_TREE_RE = re.compile(r"github\.com/([^/]+)/([^/]+)/tree/([^/]+)(?:/(.+?))?/?$")
_GITLAB_TREE_RE = re.compile(r"gitlab\.com/([^/]+)/([^/]+)/-/tree/([^/]+)(?:/(.+?))?/?$")
_GITHUB_REPO_RE = re.compile(r"github\.com/([^/]+)/([^/]+)")
_GITLAB_REPO_RE = re.compile(r"gitlab\.com/([^/]+)/([^/]+)")
_SHORTHAND_RE = re.compile(r"^([^/]+)/([^/]+)(?:/(.+))?$")


@dataclass(frozen=True)
class SourceDescriptor:
    url: str
    host: str  # "github" | "gitlab" | "git"
    branch: str | None = None
    subpath: str | None = None

    @property
    def effective_branch(self) -> str:
        return self.branch or DEFAULT_BRANCH

    def describe(self) -> str:
        out = self.url
        if self.subpath:
            out += f" ({self.subpath})"
        if self.branch:
            out += f" @ {self.branch}"
        return out


def _strip_git_suffix(repo: str) -> str:
    return repo[: -len(".git")] if repo.endswith(".git") else repo


def _clean_subpath(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip("/")
    return cleaned or None


def parse_source(text: str) -> SourceDescriptor:
    """
    Resolve a user supplied source string. Never raises: anything unrecognised is
    treated as a literal git URL.

      owner/repo[/subpath]                         -> GitHub
      https://github.com/owner/repo[/tree/b/path]  -> GitHub, optional branch/subpath
      https://gitlab.com/owner/repo[/-/tree/b/p]   -> GitLab, optional branch/subpath
    """
    raw = text.strip()

    for host, tree_re in (("github", _GITHUB_TREE_RE), ("gitlab", _GITLAB_TREE_RE)):
        m = tree_re.search(raw)
        if m:
            owner, repo, branch, subpath = m.groups()
            return SourceDescriptor(
                url=f"https://{host}.com/{owner}/{_strip_git_suffix(repo)}.git",
                host=host,
                branch=branch,
                subpath=_clean_subpath(subpath),
            )

    for host, repo_re in (("github", _GITHUB_REPO_RE), ("gitlab", _GITLAB_REPO_RE)):
        m = repo_re.search(raw)
        if m:
            owner, repo = m.groups()
            return SourceDescriptor(url=f"https://{host}.com/{owner}/{_strip_git_suffix(repo)}.git", host=host)

    m = _SHORTHAND_RE.match(raw)
    if m and ":" not in raw:
        owner, repo, subpath = m.groups()
        return SourceDescriptor(
            url=f"https://github.com/{owner}/{_strip_git_suffix(repo)}.git",
            host="github",
            subpath=_clean_subpath(subpath),
        )

    return SourceDescriptor(url=raw, host="git")
