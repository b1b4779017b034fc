import json

import pytest

from pipewright.errors import UploadError
from pipewright.model import JobResult, JobStatus, PipelineStatus, StepResult
from pipewright.report import (
    FileReportSink,
    HttpReportSink,
    aggregate,
    publish,
    render_report,
    report_to_dict,
)


def passed(name):
    return JobResult.from_steps(name, [StepResult("build", 0, 0.1, "fine")])


def failed(name):
    return JobResult.from_steps(
        name,
        [StepResult("checkout", 0, 0.1), StepResult("test", 101, 2.0, "test result: FAILED. 1 failed")],
    )


class StubSink:
    def __init__(self, outcome):
        self.outcome = outcome
        self.reports = []

    def upload(self, report):
        self.reports.append(report)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def test_all_passed_is_passed():
    result = aggregate({"Build": passed("Build"), "Test": passed("Test")})
    assert result.overall_status is PipelineStatus.PASSED


def test_any_failed_is_failed():
    result = aggregate({"Build": passed("Build"), "Test": failed("Test")})
    assert result.overall_status is PipelineStatus.FAILED


def test_skipped_jobs_do_not_fail_the_pipeline():
    result = aggregate({"Build": passed("Build"), "Deploy": JobResult.skipped("Deploy")})
    assert result.overall_status is PipelineStatus.PASSED


def test_aggregate_is_idempotent():
    results = {"Test": failed("Test"), "Build": passed("Build")}
    first = aggregate(results, order=["Build", "Test"])
    again = aggregate(dict(first.jobs), order=["Build", "Test"])

    assert first == again


def test_declaration_order_not_completion_order():
    results = {"Coverage": passed("Coverage"), "Build": passed("Build"), "Test": passed("Test")}
    result = aggregate(results, order=["Build", "Test", "Coverage"])
    assert list(result.jobs) == ["Build", "Test", "Coverage"]


def test_from_steps_marks_first_failure():
    jr = failed("Test")
    assert jr.status is JobStatus.FAILED
    assert jr.first_failure_index == 1
    assert jr.failed_step.exit_code == 101


def test_render_report_shows_failing_step_and_output():
    text = render_report(aggregate({"Build": passed("Build"), "Test": failed("Test")}, order=["Build", "Test"]))

    assert "Build: PASSED" in text
    assert "Test: FAILED" in text
    assert "'test' (exit=101)" in text
    assert "1 failed" in text
    assert text.rstrip().endswith("PIPELINE: FAILED")
    assert text.index("Build") < text.index("Test")


def test_report_to_dict_is_json_serializable():
    data = report_to_dict(aggregate({"Test": failed("Test")}))
    decoded = json.loads(json.dumps(data))

    assert decoded["status"] == "failed"
    assert decoded["jobs"][0]["first_failure_index"] == 1
    assert "output" in decoded["jobs"][0]["steps"][1]
    assert "output" not in decoded["jobs"][0]["steps"][0]


@pytest.mark.parametrize("outcome", [False, UploadError("codecov is down")])
def test_strict_upload_failure_flips_passed_pipeline(outcome):
    result = publish(aggregate({"Coverage": passed("Coverage")}), StubSink(outcome), strict=True)

    assert result.overall_status is PipelineStatus.FAILED
    assert result.upload.ok is False
    assert result.jobs["Coverage"].status is JobStatus.PASSED


@pytest.mark.parametrize("outcome", [False, UploadError("codecov is down")])
def test_non_strict_upload_failure_keeps_passed(outcome):
    result = publish(aggregate({"Coverage": passed("Coverage")}), StubSink(outcome), strict=False)

    assert result.overall_status is PipelineStatus.PASSED
    assert result.upload.ok is False
    assert "upload: FAILED" in render_report(result)


def test_successful_upload_receives_the_report():
    sink = StubSink(True)
    result = publish(aggregate({"Build": passed("Build")}), sink, strict=True)

    assert result.passed
    assert result.upload.ok
    assert sink.reports[0]["jobs"][0]["name"] == "Build"


def test_failed_jobs_stay_failed_after_a_good_upload():
    result = publish(aggregate({"Test": failed("Test")}), StubSink(True), strict=True)
    assert result.overall_status is PipelineStatus.FAILED


def test_file_sink_writes_json(tmp_path):
    path = tmp_path / "out" / "report.json"
    assert FileReportSink(path).upload({"status": "passed", "jobs": []}) is True
    assert json.loads(path.read_text())["status"] == "passed"


def test_file_sink_error_is_upload_error(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    with pytest.raises(UploadError):
        FileReportSink(blocker / "report.json").upload({})


def test_http_sink_network_error_is_upload_error():
    # port 9 on localhost: nothing listens there in a test environment
    sink = HttpReportSink("http://127.0.0.1:9/upload", timeout=2)
    with pytest.raises(UploadError):
        sink.upload({"status": "passed"})


@pytest.mark.parametrize("url", ["codecov.example/upload", "http://codecov example/upload"])
def test_http_sink_malformed_url_is_upload_error(url):
    with pytest.raises(UploadError):
        HttpReportSink(url).upload({"status": "passed"})


def test_malformed_url_fails_upload_but_not_pipeline():
    result = publish(aggregate({"Build": passed("Build")}), HttpReportSink("codecov.example/upload"), strict=False)

    assert result.overall_status is PipelineStatus.PASSED
    assert result.upload.ok is False


def test_unexpected_sink_exception_is_a_failed_upload():
    result = publish(aggregate({"Build": passed("Build")}), StubSink(RuntimeError("disk on fire")), strict=False)

    assert result.passed
    assert result.upload.ok is False
    assert "disk on fire" in result.upload.error


def test_aggregated_jobs_are_read_only():
    result = aggregate({"Build": passed("Build")})

    with pytest.raises(TypeError):
        result.jobs["Build"] = failed("Build")
    assert result.jobs["Build"].status is JobStatus.PASSED
