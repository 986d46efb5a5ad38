from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from typing import Any

from ._version import __version__
from .agents import AGENTS
from .client import DirectoryClient, DirectoryHTTPError, FlinsError, search_directory
from .config import Config, config_path, load_config, merge_env, save_config
from .context import RunContext
from .install import InstallOptions, perform_install
from .notifier import check_for_updates
from .prompts import PromptCancelled
from .remove import RemoveOptions, clean_orphaned, display_installed, list_installed, perform_remove
from .update import UpdateOptions, check_status, display_status, perform_update
from .workspace import Scope, Workspace

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

ADD_ALIASES = ("add", "a", "install", "i")
UPDATE_ALIASES = ("update", "u")
OUTDATED_ALIASES = ("outdated", "o", "status")
REMOVE_ALIASES = ("remove", "r", "rm", "uninstall")
LIST_ALIASES = ("list", "l")
SEARCH_ALIASES = ("search", "s")
CLEAN_ALIASES = ("clean", "c")


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _split_csv(values: list[str] | None) -> tuple[str, ...]:
    # "-a claude-code,cursor" and "-a claude-code cursor" are both accepted.
    out: list[str] = []
    for v in values or []:
        out.extend(p.strip() for p in v.split(",") if p.strip())
    return tuple(out)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="flins",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install, update and track skills for AI coding agents.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              FLINS_CONFIG_PATH, FLINS_DIRECTORY_URL, FLINS_TIMEOUT_S, FLINS_LOG_LEVEL,
              NO_UPDATE_NOTIFIER
            """
        ),
    )

    def _add_output_flags(parser: argparse.ArgumentParser) -> None:
        # Accepted before and after the subcommand:
        #   flins --silent list
        #   flins list --silent
        parser.add_argument("--silent", action="store_true", default=argparse.SUPPRESS, help="Suppress progress output and update notices")
        parser.add_argument("--log-level", choices=LOG_LEVELS, type=str.upper, default=argparse.SUPPRESS, help="Diagnostic log level (stderr)")

    def _add_confirm_flags(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation prompts")
        parser.add_argument("-f", "--force", action="store_true", help="Same as --yes")

    _add_output_flags(p)
    p.add_argument("--version", action="version", version=f"flins {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    add = sub.add_parser("add", aliases=list(ADD_ALIASES[1:]), help="Install skills and commands from a repository")
    _add_output_flags(add)
    _add_confirm_flags(add)
    add.add_argument("source", help="owner/repo[/path], a GitHub or GitLab URL, or any git URL")
    add.add_argument("-g", "--global", dest="global_scope", action="store_true", help="Install for the user instead of the project")
    add.add_argument("-a", "--agent", nargs="+", metavar="AGENT", help=f"Target agents ({', '.join(AGENTS)})")
    add.add_argument("-s", "--skill", nargs="+", metavar="NAME", help="Install only these skills or commands")
    add.add_argument("-l", "--list", dest="list_only", action="store_true", help="List what the repository offers and exit")
    add.add_argument("--no-symlink", action="store_true", help="Copy files into each agent instead of linking")

    upd = sub.add_parser("update", aliases=list(UPDATE_ALIASES[1:]), help="Update installed skills to the latest commit")
    _add_output_flags(upd)
    _add_confirm_flags(upd)
    upd.add_argument("names", nargs="*", help="Only these skills (default: all)")

    out = sub.add_parser("outdated", aliases=list(OUTDATED_ALIASES[1:]), help="Show which installed skills have updates")
    _add_output_flags(out)
    out.add_argument("names", nargs="*", help="Only these skills (default: all)")
    out.add_argument("-v", "--verbose", action="store_true", help="Show commits and installation paths")

    rem = sub.add_parser("remove", aliases=list(REMOVE_ALIASES[1:]), help="Remove installed skills")
    _add_output_flags(rem)
    _add_confirm_flags(rem)
    rem.add_argument("names", nargs="*", help="Skills to remove (default: choose interactively)")

    ls = sub.add_parser("list", aliases=list(LIST_ALIASES[1:]), help="List tracked skills by scope")
    _add_output_flags(ls)
    ls.add_argument("--json", action="store_true", help="Output JSON")

    search = sub.add_parser("search", aliases=list(SEARCH_ALIASES[1:]), help="Search the public skills directory")
    _add_output_flags(search)
    search.add_argument("query", nargs="?", help="Matches name, description and author")
    search.add_argument("--tag", help="Only entries with this tag")
    search.add_argument("--json", action="store_true", help="Output JSON")

    clean = sub.add_parser("clean", aliases=list(CLEAN_ALIASES[1:]), help="Drop lockfile entries whose files are gone")
    _add_output_flags(clean)

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--directory-url")
    cfg_set.add_argument("--index-url", help='Package index JSON URL, "{package}" is substituted')
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--symlink", action=argparse.BooleanOptionalAction, default=None)
    cfg_set.add_argument("--update-check", action=argparse.BooleanOptionalAction, default=None)
    cfg_set.add_argument("--log-level", dest="set_log_level", choices=LOG_LEVELS, type=str.upper)

    return p


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _auto_confirm(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "yes", False) or getattr(args, "force", False))


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        print(json.dumps(asdict(cfg), indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        changes: dict[str, Any] = {}
        if args.directory_url is not None:
            changes["directory_url"] = args.directory_url
        if args.index_url is not None:
            changes["index_url"] = args.index_url
        if args.timeout_s is not None:
            changes["timeout_s"] = args.timeout_s
        if args.symlink is not None:
            changes["symlink"] = args.symlink
        if args.update_check is not None:
            changes["update_check"] = args.update_check
        if args.set_log_level is not None:
            changes["log_level"] = args.set_log_level
        path = save_config(replace(cfg, **changes))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_add(args: argparse.Namespace, cfg: Config, ctx: RunContext) -> int:
    options = InstallOptions(
        scope=Scope.GLOBAL if args.global_scope else None,
        agents=_split_csv(args.agent),
        names=_split_csv(args.skill),
        list_only=args.list_only,
        yes=_auto_confirm(args),
        symlink=cfg.symlink and not args.no_symlink,
    )
    report = asyncio.run(perform_install(args.source, options, ctx))
    return 0 if report.ok else 1


def cmd_update(args: argparse.Namespace, ctx: RunContext) -> int:
    report = asyncio.run(perform_update(args.names, UpdateOptions(yes=_auto_confirm(args)), ctx))
    return 0 if report.ok else 1


def cmd_outdated(args: argparse.Namespace, ctx: RunContext) -> int:
    results = asyncio.run(check_status(args.names, ctx))
    # The table is the whole point of this command, so it ignores --silent.
    display_status(results, replace(ctx, silent=False), verbose=args.verbose)
    return 0


def cmd_remove(args: argparse.Namespace, ctx: RunContext) -> int:
    report = asyncio.run(perform_remove(args.names, RemoveOptions(yes=_auto_confirm(args)), ctx))
    return 0 if report.ok else 1


def cmd_list(args: argparse.Namespace, ctx: RunContext) -> int:
    grouped = list_installed(ctx)
    if args.json:
        payload = {
            scope.value: [
                {
                    "key": unit.key.encode(),
                    **unit.entry.to_json(),
                    "installations": [
                        {"agent": i.agent, "path": str(i.path)} for i in installations
                    ],
                }
                for unit, installations in units
            ]
            for scope, units in grouped.items()
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    display_installed(grouped, replace(ctx, silent=False))
    return 0


def cmd_search(args: argparse.Namespace, cfg: Config) -> int:
    with DirectoryClient(directory_url=cfg.directory_url, index_url=cfg.index_url, timeout_s=cfg.timeout_s) as client:
        entries = client.list_directory()
    found = search_directory(entries, query=args.query, tag=args.tag)

    if args.json:
        print(json.dumps([asdict(e) for e in found], indent=2, sort_keys=True))
        return 0

    if not found:
        print("No skills found")
        return 0

    rows: list[list[str]] = [["NAME", "AUTHOR", "SOURCE", "DESCRIPTION"]]
    for e in found:
        desc = e.description if len(e.description) <= 60 else e.description[:57] + "..."
        rows.append([e.name, e.author, e.source, desc])
    _print_table(rows)
    print("\nInstall with: flins add <source>")
    return 0


def cmd_clean(args: argparse.Namespace, ctx: RunContext) -> int:
    clean_orphaned(ctx)
    return 0


def _http_error_detail(body: str) -> str | None:
    text = body.strip()
    if not text:
        return None
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(obj, dict):
        for key in ("message", "detail", "error"):
            value = obj.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return text


def _format_http_error(err: DirectoryHTTPError) -> str:
    detail = _http_error_detail(err.body)
    if err.status_code == 404:
        base = "HTTP 404 Not Found. Check the directory URL (flins config set --directory-url)."
    else:
        base = f"HTTP {err.status_code}"
    if detail:
        return f"{base} {detail}"
    return base


def run(args: argparse.Namespace, cfg: Config, ctx: RunContext) -> int:
    if args.cmd in ADD_ALIASES:
        return cmd_add(args, cfg, ctx)
    if args.cmd in UPDATE_ALIASES:
        return cmd_update(args, ctx)
    if args.cmd in OUTDATED_ALIASES:
        return cmd_outdated(args, ctx)
    if args.cmd in REMOVE_ALIASES:
        return cmd_remove(args, ctx)
    if args.cmd in LIST_ALIASES:
        return cmd_list(args, ctx)
    if args.cmd in SEARCH_ALIASES:
        return cmd_search(args, cfg)
    if args.cmd in CLEAN_ALIASES:
        return cmd_clean(args, ctx)
    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.cmd == "config":
        return cmd_config(args)

    cfg = merge_env(load_config())
    silent = bool(getattr(args, "silent", False))
    _configure_logging(getattr(args, "log_level", None) or cfg.log_level)

    ctx = RunContext(workspace=Workspace.current(), silent=silent)
    logger.debug("Running %s in %s", args.cmd, ctx.workspace.cwd)
    try:
        code = run(args, cfg, ctx)
    except PromptCancelled:
        print("Cancelled.")
        return 0
    except DirectoryHTTPError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except FlinsError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    check_for_updates(cfg, silent=silent)
    return code


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
