# config.py
# Workflow loading: a declarative document (YAML/JSON) or a python workflow file.
# Everything here fails with ConfigError, before any job is scheduled.
from __future__ import annotations

import json
import runpy
import shlex
from pathlib import Path, PurePath, PureWindowsPath
from typing import Annotated, Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dag import build_dag
from .errors import ConfigError
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
from .triggers import validate_rules

YAML_SUFFIXES = {".yml", ".yaml"}


# -------------------- Document schema --------------------

def _str_map(value: Any) -> Any:
    # YAML happily yields ints/bools for env values; the process env wants strings
    if isinstance(value, dict):
        return {str(k): _env_value(v) for k, v in value.items()}
    return value


def _env_value(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _str_list(value: Any) -> Any:
    if isinstance(value, str):
        return [value]
    return value


StrMap = Annotated[Dict[str, str], BeforeValidator(_str_map)]
StrList = Annotated[List[str], BeforeValidator(_str_list)]


class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepDoc(_Doc):
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = Field(default=None, alias="working-directory")
    env: StrMap = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("args", mode="before")
    @classmethod
    def _split_args(cls, value: Any) -> Any:
        # `args: -v --out Xml` is as common as a list
        if isinstance(value, str):
            return shlex.split(value)
        if isinstance(value, list):
            return [str(v) for v in value]
        return value

    @field_validator("cwd")
    @classmethod
    def _relative_cwd(cls, value: Optional[str]) -> Optional[str]:
        # Steps run inside the job workspace; never let them point outside it
        if value is not None:
            path = PurePath(value)
            if path.is_absolute() or PureWindowsPath(value).is_absolute() or ".." in path.parts:
                raise ValueError("working-directory must be a relative path inside the workspace")
        return value

    @model_validator(mode="after")
    def _one_invocation(self) -> StepDoc:
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.run is not None and self.command is not None:
            raise ValueError("'command' only applies to 'uses' steps")
        return self

    def to_step(self, index: int) -> Step:
        if self.run is not None:
            invocation = ShellCommand(self.run)
            default_name = self.run.splitlines()[0] if self.run.strip() else f"step {index + 1}"
        else:
            invocation = ToolTask(self.uses, self.command)
            default_name = " ".join(filter(None, [self.uses, self.command]))
        return Step(
            name=self.name or default_name,
            command=invocation,
            args=tuple(self.args),
            cwd=self.cwd,
            env=dict(self.env),
            timeout=self.timeout,
        )


class JobDoc(_Doc):
    steps: List[StepDoc] = Field(min_length=1)
    needs: StrList = Field(default_factory=list)
    env: StrMap = Field(default_factory=dict)
    requires: StrList = Field(default_factory=list)
    toolchain: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    # Accepted for familiarity with hosted CI documents; every job runs locally
    runs_on: Optional[str] = Field(default=None, alias="runs-on")

    def to_job(self, name: str) -> Job:
        return Job(
            name=name,
            steps=[s.to_step(i) for i, s in enumerate(self.steps)],
            needs=list(self.needs),
            env=dict(self.env),
            requires=list(self.requires),
            toolchain=self.toolchain,
            timeout=self.timeout,
        )


class TriggerDoc(_Doc):
    branches: Annotated[Optional[List[Any]], BeforeValidator(_str_list)] = None


class SettingsDoc(_Doc):
    max_parallel: Optional[int] = Field(default=None, ge=1)
    step_timeout: Optional[float] = Field(default=None, gt=0)
    deadline: Optional[float] = Field(default=None, gt=0)


class ToolchainDoc(_Doc):
    env: StrMap = Field(default_factory=dict)
    requires: StrList = Field(default_factory=list)


class ReportDoc(_Doc):
    path: Optional[str] = None
    url: Optional[str] = None
    token_env: Optional[str] = None
    fail_ci_if_error: bool = False


class WorkflowDoc(_Doc):
    name: str = "workflow"
    on: Union[str, List[str], Dict[str, Optional[TriggerDoc]]]
    env: StrMap = Field(default_factory=dict)
    settings: SettingsDoc = Field(default_factory=SettingsDoc)
    toolchains: Dict[str, ToolchainDoc] = Field(default_factory=dict)
    report: ReportDoc = Field(default_factory=ReportDoc)
    jobs: Dict[str, JobDoc] = Field(min_length=1)

    def triggers(self) -> tuple[TriggerRule, ...]:
        if isinstance(self.on, str):
            spec: Dict[str, Optional[TriggerDoc]] = {self.on: None}
        elif isinstance(self.on, list):
            spec = {kind: None for kind in self.on}
        else:
            spec = self.on

        rules = []
        for kind, trigger in spec.items():
            try:
                event_kind = EventKind(kind)
            except ValueError:
                raise ConfigError(
                    f"Unsupported trigger event: {kind!r}",
                    supported=[k.value for k in EventKind],
                ) from None
            branches = trigger.branches if trigger is not None else None
            rules.append(TriggerRule(event_kind, tuple(branches) if branches is not None else None))
        return tuple(rules)

    def to_config(self) -> PipelineConfig:
        return PipelineConfig(
            name=self.name,
            jobs=tuple(doc.to_job(name) for name, doc in self.jobs.items()),
            triggers=self.triggers(),
            env=dict(self.env),
            toolchains={
                name: Toolchain(name=name, env=dict(tc.env), requires=tuple(tc.requires))
                for name, tc in self.toolchains.items()
            },
            settings=PipelineSettings(**self.settings.model_dump()),
            report=ReportSettings(**self.report.model_dump()),
        )


# -------------------- Loading --------------------

def _validation_details(e: ValidationError) -> List[str]:
    lines = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        lines.append(f"{loc}: {err.get('msg')}")
    return lines


def parse_workflow(data: Any, source: str = "<document>") -> PipelineConfig:
    """Validate an already-parsed document and build the pipeline config."""
    if not isinstance(data, dict):
        raise ConfigError(f"Workflow root must be a mapping, got {type(data).__name__}", source=source)

    # YAML 1.1 reads a bare `on:` key as boolean true
    if True in data and "on" not in data:
        data = dict(data)
        data["on"] = data.pop(True)

    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid workflow {source}",
            source=source,
            errors=_validation_details(e),
        ) from e

    config = doc.to_config()
    validate_config(config)
    return config


def validate_config(config: PipelineConfig) -> None:
    """Checks shared by every workflow format: branch patterns and the job graph."""
    validate_rules(config.triggers)
    build_dag(config.jobs)


def _load_python_workflow(wf_path: Path) -> PipelineConfig:
    """
    The file must define either:
      - workflow() -> PipelineConfig | List[Job]
      - JOBS = [Job, ...]
    """
    from .dsl import wf

    module_name = f"pipewright_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            result = globals_dict["workflow"]()
        else:
            result = globals_dict.get("JOBS")
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"Workflow file raised {type(e).__name__}: {e}", source=str(wf_path)) from e

    if isinstance(result, PipelineConfig):
        config = result
    elif isinstance(result, list) and result and all(isinstance(j, Job) for j in result):
        config = wf(*result, name=wf_path.stem)
    else:
        raise ConfigError(
            "Workflow must return/define a PipelineConfig or a non-empty List[Job]. "
            "Define workflow() -> wf(job(...), ...) or JOBS = [Job, ...].",
            source=str(wf_path),
        )

    validate_config(config)
    return config


def load_workflow(path: str | Path) -> PipelineConfig:
    """
    Load a workflow from a YAML/JSON document or a python file.

    Raises:
        ConfigError: missing file, unsupported format, malformed document,
            bad branch pattern, or an invalid job graph.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.is_file():
        raise ConfigError(f"Workflow file not found: {wf_path}")

    suffix = wf_path.suffix.lower()
    if suffix == ".py":
        return _load_python_workflow(wf_path)

    try:
        text = wf_path.read_text(encoding="utf-8")
        if suffix in YAML_SUFFIXES:
            data = yaml.safe_load(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            raise ConfigError(
                f"Unsupported workflow format: {wf_path.name}",
                supported=sorted(YAML_SUFFIXES | {".json", ".py"}),
            )
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not parse {wf_path.name}: {e}", source=str(wf_path)) from e
    except UnicodeDecodeError as e:
        raise ConfigError(f"{wf_path.name} is not valid UTF-8: {e}", source=str(wf_path)) from e
    except OSError as e:
        raise ConfigError(f"Could not read {wf_path}: {e}") from e

    return parse_workflow(data, source=str(wf_path))
