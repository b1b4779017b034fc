import pytest

from pipewright.dsl import build, job, matrix, on, sh, task, wf
from pipewright.model import EventKind, PipelineSettings, TriggerRule
from pipewright.tools import ShellCommand, ToolTask


def test_job_flattens_step_lists_and_applies_cwd():
    j = job(
        "test",
        sh("a", "echo a"),
        [sh("b", "echo b", cwd="sub"), sh("c", "echo c")],
        cwd="repo",
        needs=["build"],
    )

    assert [s.name for s in j.steps] == ["a", "b", "c"]
    assert [s.cwd for s in j.steps] == ["repo", "sub", "repo"]
    assert j.needs == ["build"]


def test_job_requires_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_task_builds_typed_invocation():
    step = task("Build", "cargo", "build", ["--verbose"])

    assert step.command == ToolTask("cargo", "build")
    assert step.run == "cargo build --verbose"
    assert step.command.command_line(step.args) == ["cargo", "build", "--verbose"]


def test_shell_command_quotes_extra_args():
    assert ShellCommand("echo").command_line(["a b"]) == "echo 'a b'"


def test_builder():
    j = (
        build("coverage")
        .depends_on("build")
        .define_requirements("cargo")
        .define_task("Coverage", "cargo", "tarpaulin", "--out", "Xml")
        .define_step("Show", "cat cobertura.xml")
        .with_env(CARGO_INCREMENTAL=0)
        .with_toolchain("nightly")
        .with_timeout(600)
        .build()
    )

    assert j.needs == ["build"]
    assert j.requires == ["cargo"]
    assert j.steps[0].args == ("--out", "Xml")
    assert j.env == {"CARGO_INCREMENTAL": "0"}
    assert j.toolchain == "nightly"
    assert j.timeout == 600


def test_builder_without_steps():
    with pytest.raises(ValueError):
        build("empty").build()


def test_matrix_expands_jobs():
    jobs = matrix("toolchain", ["stable", "nightly"]).jobs(
        lambda v: job(f"test-{v}", task("Test", "cargo", "test"), toolchain=v)
    )
    assert [(j.name, j.toolchain) for j in jobs] == [("test-stable", "stable"), ("test-nightly", "nightly")]


def test_on_without_branches_matches_any():
    assert on("push") == TriggerRule(EventKind.PUSH, None)
    assert on("pull_request", "develop") == TriggerRule(EventKind.PULL_REQUEST, ("develop",))


def test_wf_defaults_and_flattening():
    config = wf(job("a", sh("a", "true")), [job("b", sh("b", "true"))])

    assert config.job_names == ["a", "b"]
    assert config.triggers == (on("push"), on("pull_request"))
    assert config.settings == PipelineSettings()


def test_wf_explicit_empty_triggers_never_run():
    assert wf(job("a", sh("a", "true")), triggers=[]).triggers == ()
