from .dsl import job, sh, task, on, matrix, wf, JobBuilder, build
from .model import Event, EventKind, Job, JobResult, JobStatus, PipelineResult, PipelineStatus, Step, StepResult, TriggerRule
from .runner import CancelToken, run_job, run_pipeline, run_step
from .report import aggregate, publish, render_report
from .triggers import should_run

__all__ = [
    "job", "sh", "task", "on", "matrix", "wf", "JobBuilder", "build",
    "Event", "EventKind", "Job", "JobResult", "JobStatus", "PipelineResult", "PipelineStatus",
    "Step", "StepResult", "TriggerRule",
    "CancelToken", "run_job", "run_pipeline", "run_step",
    "aggregate", "publish", "render_report",
    "should_run",
]
