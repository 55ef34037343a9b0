# src/relayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .model import CacheDescriptor, Job, Pipeline, Step, TriggerFilter


# ---------------------------------------------------------------------
# Step / cache / trigger helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def cache(
    *paths: str,
    hash_files: Iterable[str] = (),
    key: str = "{os}-{hash}",
) -> CacheDescriptor:
    """
    cache("target", "~/.cargo/registry", hash_files=["**/Cargo.lock"], key="{os}-cargo-{hash}")
    """
    if not paths:
        raise ValueError("cache() needs at least one path to store")
    return CacheDescriptor(paths=tuple(paths), hash_files=tuple(hash_files), key=key)


def on(
    *,
    push: Optional[Iterable[str]] = None,
    pull_request: Optional[Iterable[str]] = None,
) -> TriggerFilter:
    """on(push=["master"], pull_request=["master"])"""
    return TriggerFilter(
        push=tuple(push) if push is not None else None,
        pull_request=tuple(pull_request) if pull_request is not None else None,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    cache: Optional[CacheDescriptor] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    if not steps:
        raise ValueError(f"job({name!r}) must have at least one step")

    steps_final = list(steps)
    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        # force values to str so they can go straight into a process env
        env={k: str(v) for k, v in (env or {}).items()},
        cache=cache,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._cache: Optional[CacheDescriptor] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_cache(self, *paths: str, hash_files: Iterable[str] = (), key: str = "{os}-{hash}"):
        self._cache = cache(*paths, hash_files=hash_files, key=key)
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            env=dict(self._env),
            cache=self._cache,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "pipeline",
    on: Optional[TriggerFilter] = None,
    env: Optional[Dict[str, str]] = None,
) -> Pipeline:
    """
    Workflow definition helper.

        from relayci import wf, job, sh, on

        def workflow():
            return wf(
                job("build", sh("Build", "make")),
                job("test", sh("Test", "make test"), needs=["build"]),
                name="ci",
                on=on(push=["master"]),
            )
    """
    if not jobs:
        raise ValueError("wf() needs at least one job")
    return Pipeline(
        name=name,
        jobs=list(jobs),
        on=on,
        env={k: str(v) for k, v in (env or {}).items()},
    )
