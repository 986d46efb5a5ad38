from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, Generic, Protocol, Sequence, TextIO, TypeVar

T = TypeVar("T")


class PromptCancelled(Exception):
    """The user backed out of an interactive prompt. Not an error."""


@dataclass(frozen=True)
class Choice(Generic[T]):
    value: T
    label: str
    hint: str | None = None


class Prompter(Protocol):
    def multiselect(
        self,
        message: str,
        choices: Sequence[Choice[Any]],
        *,
        initial: Sequence[Any] = (),
        required: bool = True,
    ) -> list[Any]:
        ...

    def select(self, message: str, choices: Sequence[Choice[Any]]) -> Any:
        ...

    def confirm(self, message: str, *, default: bool = True) -> bool:
        ...


def parse_selection(answer: str, count: int) -> list[int] | None:
    """
    Parse "1,3", "2-4", "all" (or "*") into zero-based indexes.

    Returns None when the answer is not a valid selection.
    """
    answer = answer.strip().lower()
    if answer in ("all", "*", "a"):
        return list(range(count))
    picked: list[int] = []
    for part in answer.replace(" ", ",").split(","):
        if not part:
            continue
        lo_s, sep, hi_s = part.partition("-")
        try:
            lo = int(lo_s)
            hi = int(hi_s) if sep else lo
        except ValueError:
            return None
        if lo < 1 or hi > count or lo > hi:
            return None
        for i in range(lo - 1, hi):
            if i not in picked:
                picked.append(i)
    return picked


class ConsolePrompter:
    """Line based prompts on stdin/stdout. EOF and Ctrl-C cancel."""

    def __init__(self, *, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout

    def _ask(self, prompt: str) -> str:
        self.stdout.write(prompt)
        self.stdout.flush()
        try:
            line = self.stdin.readline()
        except KeyboardInterrupt as e:
            raise PromptCancelled() from e
        if not line:
            raise PromptCancelled()
        return line.rstrip("\n")

    def _print_choices(self, message: str, choices: Sequence[Choice[Any]], marked: Sequence[int] = ()) -> None:
        print(message, file=self.stdout)
        for i, c in enumerate(choices, start=1):
            mark = "*" if (i - 1) in marked else " "
            hint = f"  ({c.hint})" if c.hint else ""
            print(f" {mark} {i:>2}. {c.label}{hint}", file=self.stdout)

    def multiselect(
        self,
        message: str,
        choices: Sequence[Choice[Any]],
        *,
        initial: Sequence[Any] = (),
        required: bool = True,
    ) -> list[Any]:
        marked = [i for i, c in enumerate(choices) if c.value in initial]
        self._print_choices(message, choices, marked)
        while True:
            default = ",".join(str(i + 1) for i in marked)
            suffix = f" [{default}]" if default else ""
            answer = self._ask(f"Select (e.g. 1,3 or all){suffix}: ")
            if not required and answer.strip().lower() in ("none", "-"):
                return []
            if not answer.strip():
                if marked:
                    return [choices[i].value for i in marked]
                if not required:
                    return []
            picked = parse_selection(answer, len(choices))
            if picked:
                return [choices[i].value for i in picked]
            print("Select at least one entry.", file=self.stdout)

    def select(self, message: str, choices: Sequence[Choice[Any]]) -> Any:
        self._print_choices(message, choices)
        while True:
            answer = self._ask("Select one [1]: ").strip() or "1"
            picked = parse_selection(answer, len(choices))
            if picked and len(picked) == 1:
                return choices[picked[0]].value
            print(f"Enter a number between 1 and {len(choices)}.", file=self.stdout)

    def confirm(self, message: str, *, default: bool = True) -> bool:
        suffix = "[Y/n]" if default else "[y/N]"
        while True:
            answer = self._ask(f"{message} {suffix} ").strip().lower()
            if not answer:
                return default
            if answer in ("y", "yes"):
                return True
            if answer in ("n", "no"):
                return False
