# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class CacheDescriptor:
    """
    Where a job's cache lives and how its key is derived.

    key:        template; "{os}" is the runner OS, "{hash}" the digest of hash_files
    hash_files: globs (relative to repo root) whose contents feed the key, e.g. "**/Cargo.lock"
    paths:      path prefixes stored/restored under the key ("target", "~/.cargo/registry")
    """
    paths: tuple[str, ...]
    hash_files: tuple[str, ...] = ()
    key: str = "{os}-{hash}"


@dataclass
class Job:
    """A CI job: ordered steps + dependencies + env + optional cache."""
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    # insertion order is kept when merged into the process env
    env: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CacheDescriptor] = None


@dataclass(frozen=True)
class TriggerFilter:
    """Branch allow-lists per event kind. None means the event never activates the pipeline."""
    push: Optional[tuple[str, ...]] = None
    pull_request: Optional[tuple[str, ...]] = None


@dataclass
class Pipeline:
    """
    The full job graph triggered together by one event.

    `env` is the workflow-level environment (e.g. CARGO_INCREMENTAL=1) handed
    to every job invocation of a run; job env wins on collisions.
    """
    name: str
    jobs: List[Job]
    on: Optional[TriggerFilter] = None
    env: Dict[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(f"Unknown job: {name}")


@dataclass(frozen=True)
class Trigger:
    """The event that activates a pipeline run."""
    event: str  # "push" | "pull_request"
    branch: str  # pushed branch, or the pull request's target branch
    sha: str | None = None
    pr_number: int | None = None


class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}

_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.BLOCKED, JobStatus.READY, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.BLOCKED: {JobStatus.READY, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.READY: {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
}


def is_valid_transition(src: JobStatus, dst: JobStatus) -> bool:
    return dst in _TRANSITIONS.get(src, set())


class PipelineStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_TRIGGERED = "not_triggered"


@dataclass
class JobResult:
    name: str
    status: JobStatus
    exit_code: int | None = None
    failed_step: str | None = None
    error: str | None = None
    cache_key: str | None = None
    cache_hit: bool = False
    started_at: float | None = None
    finished_at: float | None = None
    stdout: str = ""
    stderr: str = ""

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass
class PipelineResult:
    pipeline: str
    trigger: Trigger
    status: PipelineStatus
    order: list[str] = field(default_factory=list)
    jobs: Dict[str, JobResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in (PipelineStatus.SUCCEEDED, PipelineStatus.NOT_TRIGGERED)

    def statuses(self) -> Dict[str, JobStatus]:
        return {name: r.status for name, r in self.jobs.items()}
