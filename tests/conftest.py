# tests/conftest.py
from __future__ import annotations

import os

import pytest

from _helpers import CountingEnvFactory
from pipewright.environment import Environment
from pipewright.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture
def env_factory(tmp_path) -> CountingEnvFactory:
    return CountingEnvFactory(tmp_path)


@pytest.fixture
def environment(tmp_path) -> Environment:
    return Environment(job_name="job", workdir=tmp_path, env=dict(os.environ))
