# runner.py
from __future__ import annotations

import os
import runpy
import signal
import subprocess
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from . import config
from .cache import CacheIOError, CacheStore, compute_cache_key
from .dag import build_dag, descendants, resolve
from .log import get_logger
from .model import (
    Job,
    JobResult,
    JobStatus,
    Pipeline,
    PipelineResult,
    PipelineStatus,
    Step,
    Trigger,
    is_valid_transition,
)
from .trigger import concurrency_group, matches
from .ui.console import Console, get_console

logger = get_logger(__name__)

# how often a running command checks for cancellation
_POLL_INTERVAL = 0.1


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

@dataclass
class CommandError(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class JobCancelled(Exception):
    """Raised inside a job when its run was cancelled mid-command."""


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define one of:
      - workflow() -> Pipeline | List[Job]
      - PIPELINE = Pipeline(...)
      - JOBS = [Job, ...]

    A bare job list becomes a pipeline named after the file, with no trigger filter.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    globals_dict = runpy.run_path(str(wf_path), run_name=f"relayci_workflow_{wf_path.stem}")

    loaded = None
    if callable(globals_dict.get("workflow")):
        loaded = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        loaded = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, Pipeline):
        return loaded
    if isinstance(loaded, list) and loaded and all(isinstance(j, Job) for j in loaded):
        return Pipeline(name=wf_path.stem, jobs=loaded)

    raise TypeError(
        "Workflow must return/define a Pipeline or a non-empty List[Job]. "
        "Define workflow(), PIPELINE = wf(...) or JOBS = [Job, ...]."
    )


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _kill(proc: subprocess.Popen) -> None:
    # the step runs in its own session, so its whole process tree goes with it
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()


def _run_step(
    job: Job,
    step: Step,
    repo_root: Path,
    env: Dict[str, str],
    cancel_event: Optional[threading.Event] = None,
) -> tuple[str, str]:
    cwd = (repo_root / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise FileNotFoundError(f"[{job.name}] step '{step.name}' cwd not found: {cwd}")

    proc = subprocess.Popen(
        step.run,
        shell=True,
        cwd=str(cwd),
        env=env,
        encoding="utf-8",
        errors="replace",
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=(os.name == "posix"),
    )

    if cancel_event is None:
        stdout, stderr = proc.communicate()
    else:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel_event.is_set():
                    _kill(proc)
                    proc.communicate()
                    raise JobCancelled(f"[{job.name}] step '{step.name}' cancelled")

    if proc.returncode != 0:
        raise CommandError(
            job=job.name,
            step=step.name,
            cmd=step.run,
            exit_code=proc.returncode,
            stdout=stdout[-config.OUTPUT_TAIL:],
            stderr=stderr[-config.OUTPUT_TAIL:],
        )
    return stdout, stderr


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

class PipelineExecutor:
    """
    Owns a pipeline's job graph: resolves dependency order, restores and
    saves each job's keyed cache, and runs job commands as external processes.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        repo_root: str | Path = ".",
        cache_root: str | Path | None = None,
        cache_keep: int | None = None,
        max_workers: int | None = None,
        fail_fast: bool = False,
        console: Console | None = None,
    ):
        self.pipeline = pipeline
        self.repo_root = Path(repo_root).resolve()
        cache_root = Path(cache_root or config.CACHE_DIR).expanduser()
        if not cache_root.is_absolute():
            cache_root = self.repo_root / cache_root
        self.cache = CacheStore(cache_root)
        self.cache_keep = config.CACHE_KEEP if cache_keep is None else cache_keep
        self.max_workers = max_workers or config.WORKERS
        self.fail_fast = fail_fast
        self.console = console or get_console()

        self._runs: Dict[str, PipelineRun] = {}
        self._runs_lock = threading.Lock()

    def resolve(self) -> List[Job]:
        return resolve(self.pipeline)

    def job_env(self, job: Job) -> Dict[str, str]:
        """Process env for one job: inherited env, then pipeline env, then job env."""
        env = os.environ.copy()
        env.update({k: str(v) for k, v in self.pipeline.env.items()})
        env.update({k: str(v) for k, v in job.env.items()})
        return env

    def _restore_cache(self, job: Job, result: JobResult) -> Optional[str]:
        try:
            key = compute_cache_key(job.cache, self.repo_root)
            result.cache_key = key
            hit = self.cache.restore(job.cache, key, repo_root=self.repo_root)
        except (CacheIOError, OSError) as e:
            logger.warning("[%s] cache restore failed, continuing without cache: %s", job.name, e)
            self.console.print_cache_warning(job.name, f"restore failed: {e}")
            return result.cache_key

        result.cache_hit = hit.hit
        if hit.hit:
            self.console.print_cache_hit(job.name, key)
        else:
            self.console.print_cache_miss(job.name, key)
        return key

    def _save_cache(self, job: Job, key: str) -> None:
        try:
            self.cache.save(job.cache, key, repo_root=self.repo_root)
            self.cache.prune(keep=self.cache_keep)
        except (CacheIOError, OSError) as e:
            logger.warning("[%s] cache save failed: %s", job.name, e)
            self.console.print_cache_warning(job.name, f"save failed: {e}")
            return
        self.console.print_cache_saved(job.name, key)

    def run_job(self, job: Job, cancel_event: Optional[threading.Event] = None) -> JobResult:
        """
        Restore cache, run the steps in order (stop at the first failure),
        save cache on success. Never raises for job-level failures.
        """
        result = JobResult(name=job.name, status=JobStatus.RUNNING, started_at=time.monotonic())
        if cancel_event is not None and cancel_event.is_set():
            result.status = JobStatus.CANCELLED
            result.finished_at = result.started_at
            return result

        self.console.print_job_start(job.name)

        key = self._restore_cache(job, result) if job.cache is not None else None
        env = self.job_env(job)

        step: Optional[Step] = None
        try:
            for step in job.steps:
                if cancel_event is not None and cancel_event.is_set():
                    raise JobCancelled(f"[{job.name}] cancelled before step '{step.name}'")
                self.console.print_step(job.name, step.name)
                stdout, stderr = _run_step(job, step, self.repo_root, env, cancel_event)
                if stdout:
                    logger.debug("[%s] %s stdout:\n%s", job.name, step.name, stdout.rstrip())
                if stderr:
                    logger.debug("[%s] %s stderr:\n%s", job.name, step.name, stderr.rstrip())
        except CommandError as e:
            result.status = JobStatus.FAILED
            result.exit_code = e.exit_code
            result.failed_step = e.step
            result.error = str(e)
            result.stdout = e.stdout
            result.stderr = e.stderr
            self.console.print_step_failed(job.name, e.step, e.exit_code, e.stderr or e.stdout)
        except JobCancelled:
            result.status = JobStatus.CANCELLED
        except Exception as e:
            logger.error("[%s] step failed to start: %s", job.name, e)
            result.status = JobStatus.FAILED
            result.failed_step = step.name if step else None
            result.error = str(e)
            self.console.print_step_failed(job.name, step.name if step else "-", output=str(e))
        else:
            result.status = JobStatus.SUCCEEDED
            result.exit_code = 0
            if key is not None:
                self._save_cache(job, key)

        result.finished_at = time.monotonic()
        self.console.print_job_finished(result)
        return result

    def run(self, trigger: Trigger, cancel_event: Optional[threading.Event] = None) -> PipelineResult:
        """Run the pipeline for one triggering event, blocking until every job is terminal."""
        run = PipelineRun(self, trigger, cancel_event=cancel_event)
        run._execute()
        return run.result

    def start(self, trigger: Trigger) -> PipelineRun:
        """
        Run the pipeline in the background. An in-flight run of the same
        concurrency group (same pull request, or same event and branch) is
        cancelled and drained first.
        """
        group = concurrency_group(self.pipeline.name, trigger)
        run = PipelineRun(self, trigger)
        with self._runs_lock:
            previous = self._runs.get(group)
            self._runs[group] = run

        if previous is not None and not previous.done:
            self.console.print_info(f"Superseding in-flight run for {group}")
            previous.cancel()
            previous.join()

        run._start()
        return run


# ----------------------------------------------------------------------
# One run of a pipeline
# ----------------------------------------------------------------------

class PipelineRun:
    """
    A single pipeline run, created per triggering event.

    Tracks each job's state and enforces the job state machine.
    """

    def __init__(
        self,
        executor: PipelineExecutor,
        trigger: Trigger,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.executor = executor
        self.trigger = trigger
        self.result: Optional[PipelineResult] = None
        self.error: Optional[BaseException] = None

        self._cancel = cancel_event or threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._states: Dict[str, JobStatus] = {}
        self._thread: Optional[threading.Thread] = None

    # ---- public handle ----

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def status_of(self, name: str) -> JobStatus:
        with self._lock:
            return self._states.get(name, JobStatus.PENDING)

    def snapshot(self) -> Dict[str, JobStatus]:
        with self._lock:
            return dict(self._states)

    def join(self, timeout: float | None = None) -> bool:
        """Block until the run finishes without raising; False on timeout."""
        return self._done.wait(timeout)

    def wait(self, timeout: float | None = None) -> Optional[PipelineResult]:
        """Block until the run finishes; None on timeout. Re-raises a setup error (e.g. CycleError)."""
        if not self._done.wait(timeout):
            return None
        if self.error is not None:
            raise self.error
        return self.result

    # ---- internals ----

    def _start(self) -> None:
        self._thread = threading.Thread(
            target=self._execute_in_background,
            name=f"relayci-{self.executor.pipeline.name}",
            daemon=True,
        )
        self._thread.start()

    def _execute_in_background(self) -> None:
        # the error is recorded before done is signalled, so wait() always sees it
        try:
            self._schedule()
        except Exception as e:
            logger.error("pipeline run aborted: %s", e)
            self.error = e
        finally:
            self._done.set()

    def _transition(self, name: str, dst: JobStatus) -> None:
        with self._lock:
            src = self._states.get(name, JobStatus.PENDING)
            if not is_valid_transition(src, dst):
                raise ValueError(f"Illegal transition for job '{name}': {src.value} -> {dst.value}")
            self._states[name] = dst

    def _execute(self) -> None:
        try:
            self._schedule()
        finally:
            self._done.set()

    def _schedule(self) -> None:
        executor = self.executor
        pipeline = executor.pipeline
        console = executor.console

        if not matches(pipeline.on, self.trigger):
            console.print_not_triggered(pipeline.name, self.trigger)
            self.result = PipelineResult(
                pipeline=pipeline.name,
                trigger=self.trigger,
                status=PipelineStatus.NOT_TRIGGERED,
            )
            return

        order = executor.resolve()
        names = [j.name for j in order]
        by_name = {j.name: j for j in order}
        adj, indeg = build_dag(order)
        console.print_run_started(pipeline.name, self.trigger, len(order))

        with self._lock:
            self._states = {name: JobStatus.PENDING for name in names}
        for name in names:
            self._transition(name, JobStatus.READY if indeg[name] == 0 else JobStatus.BLOCKED)

        results: Dict[str, JobResult] = {}
        failed = False

        def finish_without_running(name: str, status: JobStatus, reason: str) -> None:
            self._transition(name, status)
            results[name] = JobResult(name=name, status=status, error=reason)
            if status is JobStatus.SKIPPED:
                console.print_job_skipped(name, reason)

        with ThreadPoolExecutor(max_workers=executor.max_workers) as pool:
            in_flight: Dict[Future, str] = {}

            while True:
                if self._cancel.is_set():
                    for name in names:
                        if self.status_of(name) in (JobStatus.BLOCKED, JobStatus.READY):
                            finish_without_running(name, JobStatus.CANCELLED, "run cancelled")
                elif not (executor.fail_fast and failed):
                    for name in names:
                        if self.status_of(name) is JobStatus.READY:
                            self._transition(name, JobStatus.RUNNING)
                            fut = pool.submit(executor.run_job, by_name[name], self._cancel)
                            in_flight[fut] = name

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: names.index(in_flight[f])):
                    name = in_flight.pop(fut)
                    try:
                        res = fut.result()
                    except Exception as e:
                        logger.error("[%s] job crashed: %s", name, e)
                        res = JobResult(name=name, status=JobStatus.FAILED, error=str(e))

                    self._transition(name, res.status)
                    results[name] = res

                    if res.status is JobStatus.SUCCEEDED:
                        # unlock dependents only on success
                        for child in sorted(adj[name], key=names.index):
                            indeg[child] -= 1
                            if indeg[child] == 0 and self.status_of(child) is JobStatus.BLOCKED:
                                self._transition(child, JobStatus.READY)
                        continue

                    if res.status is JobStatus.FAILED:
                        failed = True
                    follow = JobStatus.CANCELLED if res.status is JobStatus.CANCELLED else JobStatus.SKIPPED
                    for dep in sorted(descendants(adj, name), key=names.index):
                        if not self.status_of(dep).is_terminal:
                            finish_without_running(dep, follow, f"needs '{name}' which {res.status.value}")

        # fail_fast leaves unstarted jobs behind
        for name in names:
            if not self.status_of(name).is_terminal:
                finish_without_running(name, JobStatus.SKIPPED, "fail-fast after earlier failure")

        statuses = [results[n].status for n in names]
        if JobStatus.FAILED in statuses:
            status = PipelineStatus.FAILED
        elif JobStatus.CANCELLED in statuses:
            status = PipelineStatus.CANCELLED
        else:
            status = PipelineStatus.SUCCEEDED

        self.result = PipelineResult(
            pipeline=pipeline.name,
            trigger=self.trigger,
            status=status,
            order=names,
            jobs={n: results[n] for n in names},
        )
        console.print_results(self.result)
