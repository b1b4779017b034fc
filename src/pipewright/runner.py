# runner.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .dag import build_dag
from .environment import EnvFactory, Environment
from .errors import ProvisionError, StepExecutionError
from .model import (
    CANCELLED_CODE,
    LAUNCH_FAILURE_CODE,
    PROVISION_FAILURE_CODE,
    TIMEOUT_CODE,
    Job,
    JobResult,
    JobStatus,
    PipelineResult,
    Step,
    StepResult,
)
from .report import aggregate
from .ui.console import get_console

# local checkout ---> per-job workspace ---> steps ---> report

SETUP_STEP = "Set up environment"
INTERNAL_ERROR_STEP = "Internal error"

POLL_INTERVAL = 0.1   # how often a running step checks for cancel/timeout
KILL_GRACE = 5.0      # how long to wait for output after killing a step

_POSIX = os.name == "posix"


class CancelToken:
    """Shared cancel signal, observed by every running job."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# ----------------------------------------------------------------------
# Step Runner
# ----------------------------------------------------------------------

def _kill(proc: subprocess.Popen) -> None:
    # Steps run in their own session, so this takes down the whole tree
    # (e.g. `sh -c "cargo test"` and everything cargo spawned).
    if _POSIX:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
    else:
        proc.kill()


def _drain(proc: subprocess.Popen) -> str:
    try:
        out, _ = proc.communicate(timeout=KILL_GRACE)
    except subprocess.TimeoutExpired:
        # A grandchild escaped the process group and still holds the pipe
        proc.kill()
        out = ""
    return out or ""


def run_step(
    step: Step,
    env: Environment,
    timeout: float | None = None,
    cancel: CancelToken | None = None,
) -> StepResult:
    """
    Run one step inside `env` and return its result.

    A nonzero exit is a normal result. Timeouts and cancellation forcibly
    terminate the step and are reported as TIMEOUT_CODE / CANCELLED_CODE.
    Raises StepExecutionError only when the step cannot be launched at all.
    """
    workdir = env.workdir.resolve()
    cwd = (workdir / (step.cwd or ".")).resolve()
    if not cwd.is_relative_to(workdir):
        raise StepExecutionError(f"cwd escapes the job workspace: {step.cwd}", job=env.job_name, step=step.name)
    if not cwd.is_dir():
        raise StepExecutionError(f"cwd not found: {cwd}", job=env.job_name, step=step.name)

    proc_env = dict(env.env)
    proc_env.update(step.env)

    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            step.command.command_line(step.args),
            shell=step.command.shell,
            cwd=str(cwd),
            env=proc_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,   # combined output, in order
            text=True,
            errors="replace",
            start_new_session=_POSIX,
        )
    except OSError as e:
        raise StepExecutionError(
            f"could not launch {step.run!r}: {e}",
            job=env.job_name,
            step=step.name,
        ) from e

    exit_code: int | None = None
    note = ""
    output = ""
    while exit_code is None:
        wait_for = POLL_INTERVAL
        if timeout is not None:
            remaining = timeout - (time.monotonic() - start)
            if remaining <= 0:
                _kill(proc)
                output = _drain(proc)
                exit_code = TIMEOUT_CODE
                note = f"step timed out after {timeout:.1f}s"
                break
            wait_for = min(wait_for, remaining)

        if cancel is not None and cancel.cancelled:
            _kill(proc)
            output = _drain(proc)
            exit_code = CANCELLED_CODE
            note = "step cancelled"
            break

        try:
            # Retrying communicate() after a timeout does not lose output
            output, _ = proc.communicate(timeout=wait_for)
            exit_code = proc.returncode
        except subprocess.TimeoutExpired:
            continue

    if note:
        output = f"{output}\n[pipewright] {note}" if output else f"[pipewright] {note}"

    return StepResult(
        step_name=step.name,
        exit_code=exit_code,
        duration=time.monotonic() - start,
        output=output or "",
    )


# ----------------------------------------------------------------------
# Job Executor
# ----------------------------------------------------------------------

def _step_timeout(
    step: Step,
    job: Job,
    default: float | None,
    deadline_at: float | None,
) -> float | None:
    """Per-step timeout, composed with the pipeline deadline as the minimum of the two."""
    t = step.timeout
    if t is None:
        t = job.timeout
    if t is None:
        t = default
    if deadline_at is not None:
        remaining = deadline_at - time.monotonic()
        t = remaining if t is None else min(t, remaining)
    return t


def run_job(
    job: Job,
    env_factory: EnvFactory,
    *,
    timeout: float | None = None,
    cancel: CancelToken | None = None,
    deadline_at: float | None = None,
) -> JobResult:
    """
    Run a job's steps in order inside one freshly acquired environment.

    Stops at the first failing step. The environment is released exactly once
    on every exit path. Provisioning failures fail this job only.
    """
    console = get_console()

    if cancel is not None and cancel.cancelled:
        console.print_job_skipped(job.name, "cancelled before start")
        return JobResult.skipped(job.name)

    console.print_job_start(job.name)
    start = time.monotonic()

    try:
        env = env_factory.acquire(job)
    except ProvisionError as e:
        console.print_step_failed(job.name, SETUP_STEP, PROVISION_FAILURE_CODE)
        result = JobResult.from_steps(
            job.name,
            [StepResult(SETUP_STEP, PROVISION_FAILURE_CODE, time.monotonic() - start, str(e))],
        )
        console.print_job_finished(job.name, result.status.value, result.duration)
        return result

    results: List[StepResult] = []
    try:
        for step in job.steps:
            if cancel is not None and cancel.cancelled:
                results.append(StepResult(step.name, CANCELLED_CODE, 0.0, "[pipewright] cancelled before start"))
                break

            step_timeout = _step_timeout(step, job, timeout, deadline_at)
            if step_timeout is not None and step_timeout <= 0:
                results.append(StepResult(step.name, TIMEOUT_CODE, 0.0, "[pipewright] pipeline deadline exceeded"))
                break

            console.print_step(job.name, step.name, step.run)
            try:
                r = run_step(step, env, timeout=step_timeout, cancel=cancel)
            except StepExecutionError as e:
                r = StepResult(step.name, LAUNCH_FAILURE_CODE, 0.0, str(e))
            results.append(r)

            if not r.ok:
                break
    finally:
        env_factory.release(env)

    result = JobResult.from_steps(job.name, results)
    if result.failed_step is not None:
        console.print_step_failed(job.name, result.failed_step.step_name, result.failed_step.exit_code)
    console.print_job_finished(job.name, result.status.value, result.duration)
    return result


# ----------------------------------------------------------------------
# Pipeline Scheduler
# ----------------------------------------------------------------------

class JobState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelineState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"


class PipelineScheduler:
    """
    Runs every ready job concurrently on a thread pool and collects results.

    A failing job never stops its siblings. Jobs that `need` a job which did
    not pass are skipped. Results are written once per job, by the scheduling
    thread only.
    """

    def __init__(
        self,
        jobs: Iterable[Job],
        env_factory: EnvFactory,
        *,
        max_parallel: int | None = None,
        step_timeout: float | None = None,
        deadline: float | None = None,
        cancel: CancelToken | None = None,
    ):
        self.jobs = list(jobs)
        self.env_factory = env_factory
        self.max_parallel = max_parallel
        self.step_timeout = step_timeout
        self.deadline = deadline
        self.cancel = cancel or CancelToken()

        self.adj, self.indeg = build_dag(self.jobs)
        self.by_name: Dict[str, Job] = {j.name: j for j in self.jobs}
        self.order = [j.name for j in self.jobs]

        self.state = PipelineState.NOT_STARTED
        self.job_states: Dict[str, JobState] = {name: JobState.NOT_STARTED for name in self.order}
        self.results: Dict[str, JobResult] = {}

    def _record(self, name: str, result: JobResult) -> None:
        if name in self.results:
            raise RuntimeError(f"Result for job '{name}' recorded twice")
        self.results[name] = result
        self.job_states[name] = JobState(result.status.value)

    def _execute(self, job: Job, deadline_at: float | None) -> JobResult:
        # Runs on a worker thread; only ever touches its own job's state.
        if not self.cancel.cancelled:
            self.job_states[job.name] = JobState.RUNNING
        return run_job(
            job,
            self.env_factory,
            timeout=self.step_timeout,
            cancel=self.cancel,
            deadline_at=deadline_at,
        )

    def _skip_dependents(self, name: str) -> None:
        console = get_console()
        pending = sorted(self.adj[name], key=self.order.index)
        while pending:
            nxt = pending.pop(0)
            if nxt in self.results:
                continue
            console.print_job_skipped(nxt, f"needs '{name}'")
            self._record(nxt, JobResult.skipped(nxt))
            pending.extend(sorted(self.adj[nxt], key=self.order.index))

    def run(self) -> PipelineResult:
        deadline_at = time.monotonic() + self.deadline if self.deadline else None
        indeg = dict(self.indeg)
        ready: List[str] = [name for name in self.order if indeg[name] == 0]
        workers = self.max_parallel or max(1, len(self.jobs))

        self.state = PipelineState.RUNNING
        in_flight: Dict = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pipewright-job") as pool:
            while ready or in_flight:
                # schedule all currently ready
                while ready:
                    name = ready.pop(0)
                    fut = pool.submit(self._execute, self.by_name[name], deadline_at)
                    in_flight[fut] = name

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                fut = next(as_completed(list(in_flight.keys())))
                name = in_flight.pop(fut)

                try:
                    result = fut.result()
                except Exception as e:
                    get_console().print_exception(e)
                    result = JobResult.from_steps(
                        name, [StepResult(INTERNAL_ERROR_STEP, 1, 0.0, f"{type(e).__name__}: {e}")]
                    )
                self._record(name, result)

                # unlock dependents only on success
                if result.status is JobStatus.PASSED:
                    for nxt in sorted(self.adj[name], key=self.order.index):
                        indeg[nxt] -= 1
                        # already skipped through another failed dependency
                        if indeg[nxt] == 0 and nxt not in self.results:
                            ready.append(nxt)
                else:
                    self._skip_dependents(name)

        self.state = PipelineState.COMPLETED
        return aggregate(self.results, order=self.order)


def run_pipeline(
    jobs: Iterable[Job],
    env_factory: EnvFactory,
    *,
    max_parallel: int | None = None,
    step_timeout: float | None = None,
    deadline: float | None = None,
    cancel: CancelToken | None = None,
) -> PipelineResult:
    """Run all jobs (independent ones concurrently) and aggregate their results."""
    return PipelineScheduler(
        jobs,
        env_factory,
        max_parallel=max_parallel,
        step_timeout=step_timeout,
        deadline=deadline,
        cancel=cancel,
    ).run()
