# src/pipewright/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .model import (
    EventKind,
    Job,
    PipelineConfig,
    PipelineSettings,
    ReportSettings,
    Step,
    Toolchain,
    TriggerRule,
)
from .tools import ShellCommand, ToolTask


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, command=ShellCommand(cmd), cwd=cwd, env=env or {}, timeout=timeout)


def task(
    name: str,
    program: str,
    command: str | None = None,
    args: Sequence[str] = (),
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> Step:
    """
    Create a typed tool step, run without a shell.

        task("Build", "cargo", "build", ["--verbose"])
    """
    return Step(
        name=name,
        command=ToolTask(program, command),
        args=tuple(args),
        cwd=cwd,
        env=env or {},
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step | Sequence[Step],  # allow: job("x", sh(...), sh(...)) and step lists
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    toolchain: str | None = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    for s in steps:
        if isinstance(s, Step):
            steps_final.append(s)
        else:
            steps_final.extend(s)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        env=dict(env or {}),
        requires=list(requires or []),
        toolchain=toolchain,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._requires: list[str] = []
        self._toolchain: Optional[str] = None
        self._timeout: Optional[float] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_requirements(self, *tools: str):
        self._requires.extend(tools)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(sh(name, run, cwd=cwd))
        return self

    def define_task(self, name: str, program: str, command: str | None = None, *args: str):
        self._steps.append(task(name, program, command, args))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_toolchain(self, toolchain: str):
        self._toolchain = toolchain
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            env=dict(self._env),
            requires=list(self._requires),
            toolchain=self._toolchain,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("toolchain", ["stable", "nightly"]).jobs(
            lambda v: job(f"test-{v}", task("Test", "cargo", "test"), toolchain=v)
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Triggers + workflow helpers (single-file story)
# ---------------------------------------------------------------------

def on(kind: str | EventKind, *branches: str) -> TriggerRule:
    """on("push", "develop", "release/**"); no branches means any branch."""
    return TriggerRule(kind=EventKind(kind), branches=tuple(branches) or None)


def wf(
    *jobs: Job | Sequence[Job],
    name: str = "workflow",
    triggers: Sequence[TriggerRule] | None = None,
    env: Optional[Mapping[str, str]] = None,
    toolchains: Sequence[Toolchain] = (),
    settings: PipelineSettings | None = None,
    report: ReportSettings | None = None,
) -> PipelineConfig:
    """
    Workflow definition helper.

    Without `triggers` the workflow runs for every push and pull request.

    Users can write:
        from pipewright.dsl import wf, job, sh, on

        def workflow():
            return wf(
                job(...),
                job(...),
                triggers=[on("push", "develop")],
            )
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, Job):
            flat.append(j)
        else:
            flat.extend(j)

    return PipelineConfig(
        name=name,
        jobs=tuple(flat),
        triggers=tuple(triggers) if triggers is not None else (on("push"), on("pull_request")),
        env=dict(env or {}),
        toolchains={tc.name: tc for tc in toolchains},
        settings=settings or PipelineSettings(),
        report=report or ReportSettings(),
    )
