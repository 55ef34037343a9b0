from __future__ import annotations

import io
import time

import pytest

from relayci.model import Trigger
from relayci.runner import PipelineExecutor
from relayci.ui.console import Console


@pytest.fixture
def console() -> Console:
    return Console(stream=io.StringIO())


@pytest.fixture
def push_master() -> Trigger:
    return Trigger(event="push", branch="master", sha="0" * 40)


@pytest.fixture
def make_executor(tmp_path, console):
    def _make(pipeline, **kwargs) -> PipelineExecutor:
        kwargs.setdefault("repo_root", tmp_path)
        kwargs.setdefault("cache_root", tmp_path / ".relayci" / "cache")
        kwargs.setdefault("max_workers", 4)
        return PipelineExecutor(pipeline, console=console, **kwargs)

    return _make


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False
