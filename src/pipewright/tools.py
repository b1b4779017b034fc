# tools.py
# Invocation variants a Step can carry. The runner only ever asks an invocation
# for something it can hand to subprocess; it never interprets tool semantics.
from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Sequence, Union


@dataclass(frozen=True)
class ShellCommand:
    """A shell command line (`run:` in a workflow document)."""
    script: str

    shell = True

    def command_line(self, args: Sequence[str] = ()) -> str:
        if not args:
            return self.script
        return f"{self.script} {shlex.join(args)}"

    def describe(self, args: Sequence[str] = ()) -> str:
        return self.command_line(args)


@dataclass(frozen=True)
class ToolTask:
    """
    A typed task for an external build tool (`uses:` in a workflow document).

    ToolTask("cargo", "build") with args ("--verbose",) runs
    `cargo build --verbose` without going through a shell.
    """
    program: str
    command: str | None = None

    shell = False

    def command_line(self, args: Sequence[str] = ()) -> list[str]:
        argv = [self.program]
        if self.command:
            argv.append(self.command)
        argv.extend(args)
        return argv

    def describe(self, args: Sequence[str] = ()) -> str:
        return shlex.join(self.command_line(args))


Invocation = Union[ShellCommand, ToolTask]
