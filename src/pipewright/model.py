# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from .tools import Invocation


# Reserved exit codes for outcomes that are not a process's own exit status.
TIMEOUT_CODE = 124
PROVISION_FAILURE_CODE = 125
LAUNCH_FAILURE_CODE = 127
CANCELLED_CODE = 130


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


@dataclass(frozen=True)
class Event:
    """An incoming event: what happened, and to which branch."""
    kind: EventKind
    target_branch: str


@dataclass(frozen=True)
class TriggerRule:
    """Run on `kind` events whose target branch matches one of `branches` (None = any)."""
    kind: EventKind
    branches: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class Step:
    """A single invocation (step) inside a CI job."""
    name: str
    command: Invocation
    args: Tuple[str, ...] = ()
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout: float | None = None

    @property
    def run(self) -> str:
        """Printable command line."""
        return self.command.describe(self.args)


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + environment requirements.

    Jobs declared without `needs` are independent and run concurrently.
    """
    name: str
    steps: list[Step]

    needs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    # Tools that must be on PATH once the environment is provisioned
    requires: list[str] = field(default_factory=list)
    # Named toolchain (e.g. a release channel like "nightly")
    toolchain: Optional[str] = None
    # Default per-step timeout for this job, in seconds
    timeout: Optional[float] = None


class JobStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepResult:
    step_name: str
    exit_code: int
    duration: float
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class JobResult:
    """
    Terminal result of one job.

    Steps after the first failing one are never run, so `steps` ends at
    `first_failure_index` when the job failed.
    """
    job_name: str
    status: JobStatus
    steps: Tuple[StepResult, ...] = ()
    first_failure_index: Optional[int] = None

    @classmethod
    def from_steps(cls, job_name: str, steps: List[StepResult]) -> JobResult:
        for i, s in enumerate(steps):
            if not s.ok:
                return cls(job_name, JobStatus.FAILED, tuple(steps[: i + 1]), i)
        return cls(job_name, JobStatus.PASSED, tuple(steps))

    @classmethod
    def skipped(cls, job_name: str) -> JobResult:
        return cls(job_name, JobStatus.SKIPPED)

    @property
    def failed_step(self) -> Optional[StepResult]:
        if self.first_failure_index is None:
            return None
        return self.steps[self.first_failure_index]

    @property
    def duration(self) -> float:
        return sum(s.duration for s in self.steps)


class PipelineStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadOutcome:
    ok: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class PipelineResult:
    overall_status: PipelineStatus
    jobs: Mapping[str, JobResult]
    upload: Optional[UploadOutcome] = None

    @property
    def passed(self) -> bool:
        return self.overall_status is PipelineStatus.PASSED


# ----------------------------------------------------------------------
# Loaded configuration (immutable, built once at startup)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Toolchain:
    name: str
    env: Mapping[str, str] = field(default_factory=dict)
    requires: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PipelineSettings:
    max_parallel: Optional[int] = None   # None = one worker per job
    step_timeout: Optional[float] = None
    deadline: Optional[float] = None     # whole-pipeline budget, seconds


@dataclass(frozen=True)
class ReportSettings:
    path: Optional[str] = None
    url: Optional[str] = None
    token_env: Optional[str] = None
    fail_ci_if_error: bool = False


@dataclass(frozen=True)
class PipelineConfig:
    name: str
    jobs: Tuple[Job, ...]
    triggers: Tuple[TriggerRule, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    toolchains: Mapping[str, Toolchain] = field(default_factory=dict)
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    report: ReportSettings = field(default_factory=ReportSettings)

    @property
    def job_names(self) -> list[str]:
        return [j.name for j in self.jobs]

