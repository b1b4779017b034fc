import threading
from dataclasses import replace

import pytest

from _helpers import CountingEnvFactory, fail_step, ok_step, sleep_step
from pipewright.dsl import job, task
from pipewright.model import (
    CANCELLED_CODE,
    LAUNCH_FAILURE_CODE,
    PROVISION_FAILURE_CODE,
    TIMEOUT_CODE,
    JobStatus,
)
from pipewright.runner import CancelToken, run_job


def test_all_steps_pass(env_factory):
    result = run_job(job("build", ok_step("a"), ok_step("b"), ok_step("c")), env_factory)

    assert result.status is JobStatus.PASSED
    assert result.first_failure_index is None
    assert [s.step_name for s in result.steps] == ["a", "b", "c"]


@pytest.mark.parametrize("k", [0, 1, 2])
def test_first_failure_stops_the_job(env_factory, k):
    steps = [ok_step(f"s{i}") for i in range(4)]
    steps[k] = fail_step(f"s{k}")
    result = run_job(job("test", *steps), env_factory)

    assert result.status is JobStatus.FAILED
    assert result.first_failure_index == k
    assert len(result.steps) == k + 1
    assert result.failed_step.step_name == f"s{k}"


def test_environment_released_once_on_success_and_failure(env_factory):
    run_job(job("good", ok_step()), env_factory)
    run_job(job("bad", fail_step()), env_factory)

    assert env_factory.acquired == env_factory.released
    assert env_factory.released["good"] == 1
    assert env_factory.released["bad"] == 1


def test_environment_released_on_internal_error(tmp_path):
    class ExplodingEnvFactory(CountingEnvFactory):
        def acquire(self, j):
            env = super().acquire(j)
            env.workdir = None  # breaks run_step before any process starts
            return env

    factory = ExplodingEnvFactory(tmp_path)
    with pytest.raises(AttributeError):
        run_job(job("oops", ok_step()), factory)

    assert factory.acquired["oops"] == 1
    assert factory.released["oops"] == 1


def test_provision_error_fails_only_with_setup_step(tmp_path):
    factory = CountingEnvFactory(tmp_path, provision_fail={"nightly"})
    result = run_job(job("nightly", ok_step()), factory)

    assert result.status is JobStatus.FAILED
    assert result.first_failure_index == 0
    assert result.steps[0].exit_code == PROVISION_FAILURE_CODE
    assert "toolchain unavailable" in result.steps[0].output
    # nothing was acquired, so nothing to release
    assert factory.released["nightly"] == 0


def test_launch_failure_is_recorded_as_step_result(env_factory):
    result = run_job(job("x", task("missing", "definitely-not-a-real-program-xyz"), ok_step()), env_factory)

    assert result.status is JobStatus.FAILED
    assert result.steps[0].exit_code == LAUNCH_FAILURE_CODE
    assert len(result.steps) == 1


def test_job_timeout_applies_to_each_step(env_factory):
    result = run_job(job("slow", sleep_step(seconds=30), ok_step(), timeout=0.3), env_factory)

    assert result.steps[0].exit_code == TIMEOUT_CODE
    assert result.first_failure_index == 0


def test_step_timeout_overrides_job_timeout(env_factory):
    slow = sleep_step("slow", seconds=30)
    result = run_job(job("mixed", replace(slow, timeout=0.3), timeout=60), env_factory)

    assert result.steps[0].exit_code == TIMEOUT_CODE


def test_job_timeout_overrides_pipeline_default(env_factory):
    result = run_job(job("patient", sleep_step(seconds=0.3), timeout=30), env_factory, timeout=0.05)

    assert result.status is JobStatus.PASSED


def test_cancelled_before_start_is_skipped(env_factory):
    cancel = CancelToken()
    cancel.cancel()
    result = run_job(job("never", ok_step()), env_factory, cancel=cancel)

    assert result.status is JobStatus.SKIPPED
    assert result.steps == ()
    assert env_factory.acquired["never"] == 0


def test_cancel_mid_job_fails_with_cancelled_code(env_factory):
    cancel = CancelToken()
    timer = threading.Timer(0.3, cancel.cancel)
    timer.start()
    try:
        result = run_job(job("long", sleep_step(seconds=30), ok_step("after")), env_factory, cancel=cancel)
    finally:
        timer.cancel()

    assert result.status is JobStatus.FAILED
    assert result.failed_step.exit_code == CANCELLED_CODE
    assert [s.step_name for s in result.steps] == ["sleep"]
    assert env_factory.released["long"] == 1
