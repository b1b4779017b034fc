# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - report rendering
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# Fatal, raised before any job is scheduled.

class ConfigError(CIError):
    def __init__(self, message: str, **details):
        super().__init__(kind="config_error", message=message, details=details)


class CheckoutError(CIError):
    def __init__(self, message: str, ref: str | None = None, **details):
        if ref is not None:
            details["ref"] = ref
        super().__init__(kind="checkout_error", message=message, details=details)


# Scoped to a single job / step / the reporting stage.

class ProvisionError(CIError):
    def __init__(self, message: str, job: str | None = None, hint: str | None = None, **details):
        if hint:
            details["hint"] = hint
        super().__init__(kind="provision_error", message=message, job=job, details=details)


class StepExecutionError(CIError):
    def __init__(self, message: str, job: str | None = None, step: str | None = None, **details):
        super().__init__(kind="step_execution_error", message=message, job=job, step=step, details=details)


class UploadError(CIError):
    def __init__(self, message: str, **details):
        super().__init__(kind="upload_error", message=message, details=details)
