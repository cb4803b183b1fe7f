"""Confirmation providers consulted before destructive or ambiguous actions."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, TextIO, Tuple


class ConfirmationProvider(Protocol):
    def confirm(self, prompt: str, default: bool = False) -> bool: ...


@dataclass
class AutoConfirm:
    """Answers every prompt the same way. Records the prompts it was asked."""

    answer: bool = True
    asked: List[Tuple[str, bool]] = field(default_factory=list)

    def confirm(self, prompt: str, default: bool = False) -> bool:
        self.asked.append((prompt, default))
        return self.answer


def always_yes() -> AutoConfirm:
    return AutoConfirm(True)


def always_no() -> AutoConfirm:
    return AutoConfirm(False)


class InteractiveConfirm:
    """y/n prompt on a terminal. Empty input picks the default; EOF means no."""

    def __init__(
        self,
        input_fn: Optional[Callable[[str], str]] = None,
        out: Optional[TextIO] = None,
    ):
        self._input = input_fn or input
        self._out = out or sys.stdout

    def confirm(self, prompt: str, default: bool = False) -> bool:
        suffix = " [Y/n] " if default else " [y/N] "
        while True:
            try:
                answer = self._input(prompt + suffix).strip().lower()
            except EOFError:
                print("", file=self._out)
                return False
            if not answer:
                return default
            if answer in ("y", "yes"):
                return True
            if answer in ("n", "no"):
                return False
            print("Please answer y or n.", file=self._out)
