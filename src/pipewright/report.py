# report.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

from .errors import UploadError
from .model import JobResult, JobStatus, PipelineResult, PipelineStatus, UploadOutcome

# How much of a failing step's output ends up in the report
OUTPUT_TAIL = 4000


def aggregate(
    results: Mapping[str, JobResult],
    order: Optional[Iterable[str]] = None,
) -> PipelineResult:
    """
    Combine per-job results into one verdict.

    Pure: the same mapping always gives the same result. Jobs are ordered by
    `order` (declaration order), never by completion order; names missing from
    `order` follow in mapping order.
    """
    names = [n for n in (order or []) if n in results]
    names += [n for n in results if n not in names]
    jobs = {n: results[n] for n in names}

    failed = any(r.status is JobStatus.FAILED for r in jobs.values())
    status = PipelineStatus.FAILED if failed else PipelineStatus.PASSED
    return PipelineResult(overall_status=status, jobs=MappingProxyType(jobs))


def _tail(text: str, limit: int = OUTPUT_TAIL) -> str:
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


def report_to_dict(result: PipelineResult) -> Dict[str, Any]:
    """Machine-readable report (JSON-serializable)."""
    jobs = []
    for name, jr in result.jobs.items():
        jobs.append({
            "name": name,
            "status": jr.status.value,
            "duration": round(jr.duration, 3),
            "first_failure_index": jr.first_failure_index,
            "steps": [
                {
                    "name": s.step_name,
                    "exit_code": s.exit_code,
                    "duration": round(s.duration, 3),
                    # full output only where it explains a failure
                    **({"output": _tail(s.output)} if not s.ok else {}),
                }
                for s in jr.steps
            ],
        })

    data: Dict[str, Any] = {
        "status": result.overall_status.value,
        "jobs": jobs,
    }
    if result.upload is not None:
        data["upload"] = {"ok": result.upload.ok, "error": result.upload.error}
    return data


def render_report(result: PipelineResult) -> str:
    """Human-readable report: every job's status, and the first failing step of failed jobs."""
    lines = ["=" * 40, "RESULTS", "=" * 40]
    for name, jr in result.jobs.items():
        lines.append(f"  {name}: {jr.status.value.upper()}")
        failed = jr.failed_step
        if failed is not None:
            lines.append(
                f"    first failure: step {jr.first_failure_index + 1} "
                f"'{failed.step_name}' (exit={failed.exit_code})"
            )
            output = _tail(failed.output).rstrip()
            if output:
                lines.extend(f"    | {line}" for line in output.splitlines())

    if result.upload is not None:
        upload = "ok" if result.upload.ok else f"FAILED ({result.upload.error or 'sink returned false'})"
        lines.append(f"  report upload: {upload}")

    lines.append("-" * 40)
    lines.append(f"PIPELINE: {result.overall_status.value.upper()}")
    return "\n".join(lines)


# ----------------------------------------------------------------------
# Report sinks
# ----------------------------------------------------------------------

class ReportSink(Protocol):
    def upload(self, report: Dict[str, Any]) -> bool: ...


class FileReportSink:
    """Write the JSON report to a file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def upload(self, report: Dict[str, Any]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        except OSError as e:
            raise UploadError(f"Could not write report: {e}", path=str(self.path)) from e
        return True


class HttpReportSink:
    """POST the JSON report to an HTTP endpoint (a coverage/report service)."""

    def __init__(self, url: str, token: str | None = None, timeout: float = 30.0):
        self.url = url
        self.token = token
        self.timeout = timeout

    def upload(self, report: Dict[str, Any]) -> bool:
        req_headers = {
            "Content-Type": "application/json",
        }
        if self.token:
            req_headers["Authorization"] = f"Bearer {self.token}"

        req_data = json.dumps(report).encode("utf-8")

        try:
            req = urllib.request.Request(self.url, data=req_data, headers=req_headers, method="POST")
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return 200 <= response.status < 300
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            raise UploadError(f"Report upload failed: {e.code} {e.reason}", body=error_body[:500]) from e
        except urllib.error.URLError as e:
            raise UploadError(f"Network error: {e.reason}", url=self.url) from e
        except OSError as e:
            raise UploadError(f"Network error: {e}", url=self.url) from e
        except ValueError as e:
            # unknown url type, http.client.InvalidURL
            raise UploadError(f"Invalid report URL: {e}", url=self.url) from e


def publish(result: PipelineResult, sink: ReportSink, *, strict: bool = False) -> PipelineResult:
    """
    Upload the report and record the outcome.

    With `strict` (fail_ci_if_error), a failed upload flips the pipeline to
    FAILED even when every job passed.
    """
    try:
        ok = bool(sink.upload(report_to_dict(result)))
        outcome = UploadOutcome(ok=ok, error=None if ok else "sink rejected the report")
    except UploadError as e:
        outcome = UploadOutcome(ok=False, error=e.message)
    except Exception as e:
        # A broken sink is still only a reporting failure
        outcome = UploadOutcome(ok=False, error=f"{type(e).__name__}: {e}")

    status = result.overall_status
    if strict and not outcome.ok:
        status = PipelineStatus.FAILED
    return replace(result, overall_status=status, upload=outcome)
