# environment.py
from __future__ import annotations

import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol

from .errors import ProvisionError
from .model import Job, Toolchain


TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "git": "Install Git or fix PATH.",
}

# Never copied into a job workspace
WORKSPACE_IGNORE = (".pipewright", "__pycache__")


@dataclass
class Environment:
    """A job-exclusive execution context: its own directory and variables."""
    job_name: str
    workdir: Path
    env: Dict[str, str] = field(default_factory=dict)
    # Scratch directory owned by the factory (removed on release)
    root: Optional[Path] = None


class EnvFactory(Protocol):
    def acquire(self, job: Job) -> Environment: ...

    def release(self, env: Environment) -> None: ...


class ToolchainProvisioner:
    """
    Resolve a job's toolchain into environment variables and check its tools.

    Toolchains named in the workflow's `toolchains:` map contribute their env and
    required tools. Any other name is treated as an opaque release channel and
    exported as CI_TOOLCHAIN for the build tool to pick up.
    """

    def __init__(self, toolchains: Mapping[str, Toolchain] | None = None):
        self.toolchains = dict(toolchains or {})

    def provision(self, job: Job, env: Mapping[str, str]) -> Dict[str, str]:
        extra: Dict[str, str] = {}
        requires = list(job.requires)

        if job.toolchain:
            extra["CI_TOOLCHAIN"] = job.toolchain
            tc = self.toolchains.get(job.toolchain)
            if tc is not None:
                extra.update(tc.env)
                requires = list(tc.requires) + requires

        path = {**env, **extra}.get("PATH", os.defpath)
        for tool in dict.fromkeys(requires):
            if shutil.which(tool, path=path) is None:
                raise ProvisionError(
                    f"{tool} is not available",
                    job=job.name,
                    hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."),
                    tool=tool,
                )
        return extra


class WorkspaceEnvFactory:
    """
    Fresh workspace per job: a temporary copy of the checked-out source.

    Variables are layered: process env < pipeline env < job env < toolchain env.
    """

    def __init__(
        self,
        source: str | Path,
        *,
        base_env: Mapping[str, str] | None = None,
        provisioner: ToolchainProvisioner | None = None,
        scratch_root: str | Path | None = None,
        inherit_os_env: bool = True,
    ):
        self.source = Path(source).resolve()
        self.base_env = dict(base_env or {})
        self.provisioner = provisioner or ToolchainProvisioner()
        self.scratch_root = scratch_root
        self.inherit_os_env = inherit_os_env

        self._lock = threading.Lock()
        self._live: Dict[int, Environment] = {}

    def acquire(self, job: Job) -> Environment:
        root = Path(tempfile.mkdtemp(prefix=f"pipewright-{_slug(job.name)}-", dir=self.scratch_root))
        try:
            workdir = root / "workspace"
            shutil.copytree(
                self.source,
                workdir,
                symlinks=True,
                ignore=shutil.ignore_patterns(*WORKSPACE_IGNORE),
            )

            env: Dict[str, str] = dict(os.environ) if self.inherit_os_env else {}
            env.update(self.base_env)
            env.update(job.env)
            env["CI"] = "true"
            env["CI_JOB_NAME"] = job.name
            env["CI_WORKSPACE"] = str(workdir)
            env.update(self.provisioner.provision(job, env))
        except ProvisionError:
            shutil.rmtree(root, ignore_errors=True)
            raise
        except OSError as e:
            shutil.rmtree(root, ignore_errors=True)
            raise ProvisionError(f"Could not prepare workspace: {e}", job=job.name) from e

        environment = Environment(job_name=job.name, workdir=workdir, env=env, root=root)
        with self._lock:
            self._live[id(environment)] = environment
        return environment

    def release(self, env: Environment) -> None:
        with self._lock:
            if self._live.pop(id(env), None) is None:
                raise RuntimeError(f"Environment for job '{env.job_name}' released twice")
        if env.root is not None:
            shutil.rmtree(env.root, ignore_errors=True)

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)


def _slug(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "-" for c in name)[:40] or "job"
