from __future__ import annotations

import os
import shutil
import time
from pathlib import Path

import pytest

from conftest import wait_for
from relayci.cache import CacheIOError
from relayci.dag import CycleError
from relayci.dsl import cache, job, on, sh, wf
from relayci.model import JobStatus, PipelineStatus, Trigger
from relayci.runner import load_workflow

REPO_ROOT = Path(__file__).resolve().parents[1]


def reference_pipeline(build_cmd: str = "echo build >> order.log"):
    return wf(
        job("lint", sh("lint", "echo lint >> lint.log")),
        job("build", sh("Build", build_cmd)),
        job("test", sh("Run tests", "echo test >> order.log"), needs=["build"]),
        name="rust",
        on=on(push=["master"], pull_request=["master"]),
    )


def test_all_jobs_succeed(tmp_path, make_executor, push_master) -> None:
    result = make_executor(reference_pipeline()).run(push_master)

    assert result.status is PipelineStatus.SUCCEEDED
    assert result.ok
    assert result.order == ["lint", "build", "test"]
    assert result.statuses() == {
        "lint": JobStatus.SUCCEEDED,
        "build": JobStatus.SUCCEEDED,
        "test": JobStatus.SUCCEEDED,
    }
    assert (tmp_path / "order.log").read_text().split() == ["build", "test"]
    assert result.jobs["test"].started_at >= result.jobs["build"].finished_at


def test_build_failure_skips_test_but_not_lint(tmp_path, make_executor, push_master) -> None:
    result = make_executor(reference_pipeline(build_cmd="exit 1")).run(push_master)

    assert result.status is PipelineStatus.FAILED
    assert not result.ok
    assert result.jobs["lint"].status is JobStatus.SUCCEEDED
    assert result.jobs["build"].status is JobStatus.FAILED
    assert result.jobs["build"].exit_code == 1
    assert result.jobs["build"].failed_step == "Build"
    assert result.jobs["test"].status is JobStatus.SKIPPED
    assert result.jobs["test"].started_at is None
    assert (tmp_path / "lint.log").exists()
    assert not (tmp_path / "order.log").exists()


def test_skips_propagate_transitively(tmp_path, make_executor, push_master) -> None:
    pipeline = wf(
        job("build", sh("b", "false")),
        job("test", sh("t", "touch test.ran"), needs=["build"]),
        job("publish", sh("p", "touch publish.ran"), needs=["test"]),
        job("docs", sh("d", "touch docs.ran")),
    )

    result = make_executor(pipeline).run(push_master)

    assert result.statuses() == {
        "build": JobStatus.FAILED,
        "test": JobStatus.SKIPPED,
        "publish": JobStatus.SKIPPED,
        "docs": JobStatus.SUCCEEDED,
    }
    assert not (tmp_path / "test.ran").exists()
    assert not (tmp_path / "publish.ran").exists()


def test_cycle_aborts_before_any_job(tmp_path, make_executor, push_master) -> None:
    pipeline = wf(
        job("free", sh("f", "touch free.ran")),
        job("a", sh("a", "touch a.ran"), needs=["b"]),
        job("b", sh("b", "touch b.ran"), needs=["a"]),
    )

    with pytest.raises(CycleError):
        make_executor(pipeline).run(push_master)

    assert list(tmp_path.glob("*.ran")) == []


def test_not_triggered_runs_nothing(tmp_path, make_executor) -> None:
    result = make_executor(reference_pipeline()).run(Trigger(event="push", branch="feature"))

    assert result.status is PipelineStatus.NOT_TRIGGERED
    assert result.ok
    assert result.jobs == {}
    assert not (tmp_path / "lint.log").exists()


def test_commands_stop_at_first_failure(tmp_path, make_executor, push_master) -> None:
    pipeline = wf(
        job(
            "build",
            sh("first", "touch first.ran"),
            sh("broken", "echo boom >&2; exit 3"),
            sh("never", "touch never.ran"),
        )
    )

    res = make_executor(pipeline).run(push_master).jobs["build"]

    assert res.status is JobStatus.FAILED
    assert res.exit_code == 3
    assert res.failed_step == "broken"
    assert "boom" in res.stderr
    assert (tmp_path / "first.ran").exists()
    assert not (tmp_path / "never.ran").exists()


def test_undecodable_output_does_not_fail_a_successful_step(tmp_path, make_executor, push_master) -> None:
    pipeline = wf(
        job("build", sh("Build", "printf '\\377\\376 ok'; printf '\\377' >&2; exit 0")),
        job("broken", sh("Build", "printf '\\377 boom' >&2; exit 2")),
    )

    result = make_executor(pipeline).run(push_master)

    assert result.jobs["build"].status is JobStatus.SUCCEEDED
    assert result.jobs["broken"].status is JobStatus.FAILED
    assert result.jobs["broken"].exit_code == 2
    assert "boom" in result.jobs["broken"].stderr


def test_env_layers_are_scoped_to_each_job(tmp_path, make_executor, push_master, monkeypatch) -> None:
    monkeypatch.delenv("CARGO_INCREMENTAL", raising=False)
    pipeline = wf(
        job("a", sh("dump", 'echo "$CARGO_TERM_COLOR $CARGO_INCREMENTAL $ONLY_A" > a.env'), env={"CARGO_INCREMENTAL": "1", "ONLY_A": "yes"}),
        job("b", sh("dump", 'echo "$CARGO_TERM_COLOR $CARGO_INCREMENTAL ${ONLY_A:-unset}" > b.env')),
        job("c", sh("dump", 'echo "$CARGO_TERM_COLOR" > c.env'), env={"CARGO_TERM_COLOR": "never"}),
        env={"CARGO_TERM_COLOR": "always", "CARGO_INCREMENTAL": "0"},
    )

    make_executor(pipeline).run(push_master)

    assert (tmp_path / "a.env").read_text().split() == ["always", "1", "yes"]
    assert (tmp_path / "b.env").read_text().split() == ["always", "0", "unset"]
    assert (tmp_path / "c.env").read_text().split() == ["never"]
    assert "CARGO_INCREMENTAL" not in os.environ


def test_missing_step_cwd_fails_the_job(make_executor, push_master) -> None:
    pipeline = wf(job("x", sh("nowhere", "true", cwd="does/not/exist")))

    res = make_executor(pipeline).run(push_master).jobs["x"]

    assert res.status is JobStatus.FAILED
    assert res.failed_step == "nowhere"
    assert "cwd not found" in res.error


def _cached_pipeline(check_cmd: str = "true"):
    return wf(
        job(
            "build",
            sh("check", check_cmd),
            sh("Build", "mkdir -p target && echo artifact > target/out.bin"),
            cache=cache("target", hash_files=["Cargo.lock"], key="{os}-cargo-{hash}"),
        )
    )


def test_cache_saved_after_success_and_restored_next_run(tmp_path, make_executor, push_master) -> None:
    (tmp_path / "Cargo.lock").write_text("v1")

    first = make_executor(_cached_pipeline()).run(push_master).jobs["build"]
    assert first.status is JobStatus.SUCCEEDED
    assert not first.cache_hit

    shutil.rmtree(tmp_path / "target")
    second = make_executor(_cached_pipeline(check_cmd="test -f target/out.bin")).run(push_master).jobs["build"]

    assert second.status is JobStatus.SUCCEEDED
    assert second.cache_hit
    assert second.cache_key == first.cache_key


def test_lock_file_change_misses_cache(tmp_path, make_executor, push_master) -> None:
    (tmp_path / "Cargo.lock").write_text("v1")
    first = make_executor(_cached_pipeline()).run(push_master).jobs["build"]

    (tmp_path / "Cargo.lock").write_text("v2")
    second = make_executor(_cached_pipeline()).run(push_master).jobs["build"]

    assert second.cache_key != first.cache_key
    assert not second.cache_hit


def test_failed_job_does_not_save_cache(tmp_path, make_executor, push_master) -> None:
    (tmp_path / "Cargo.lock").write_text("v1")
    executor = make_executor(_cached_pipeline(check_cmd="exit 2"))

    res = executor.run(push_master).jobs["build"]

    assert res.status is JobStatus.FAILED
    assert not executor.cache.exists(res.cache_key)


def test_cache_errors_are_only_warnings(make_executor, push_master, monkeypatch) -> None:
    executor = make_executor(_cached_pipeline())

    def broken(*args, **kwargs):
        raise CacheIOError("disk full")

    monkeypatch.setattr(executor.cache, "restore", broken)
    monkeypatch.setattr(executor.cache, "save", broken)

    res = executor.run(push_master).jobs["build"]

    assert res.status is JobStatus.SUCCEEDED
    assert not res.cache_hit


def test_fail_fast_stops_starting_new_jobs(tmp_path, make_executor, push_master) -> None:
    pipeline = wf(
        job("a", sh("a", "exit 1")),
        job("x", sh("x", "sleep 0.5")),
        job("y", sh("y", "touch y.ran"), needs=["x"]),
    )

    relaxed = make_executor(pipeline).run(push_master)
    assert relaxed.jobs["y"].status is JobStatus.SUCCEEDED
    (tmp_path / "y.ran").unlink()

    strict = make_executor(pipeline, fail_fast=True).run(push_master)
    assert strict.jobs["x"].status is JobStatus.SUCCEEDED
    assert strict.jobs["y"].status is JobStatus.SKIPPED
    assert not (tmp_path / "y.ran").exists()


def test_cancel_kills_running_and_pending_jobs(tmp_path, make_executor, push_master) -> None:
    pipeline = wf(
        job("slow", sh("sleep", "sleep 30")),
        job("after", sh("after", "touch after.ran"), needs=["slow"]),
    )
    executor = make_executor(pipeline)

    started = time.monotonic()
    run = executor.start(push_master)
    assert wait_for(lambda: run.status_of("slow") is JobStatus.RUNNING)
    run.cancel()
    result = run.wait(timeout=10)

    assert result is not None
    assert time.monotonic() - started < 10
    assert result.status is PipelineStatus.CANCELLED
    assert result.statuses() == {"slow": JobStatus.CANCELLED, "after": JobStatus.CANCELLED}
    assert not (tmp_path / "after.ran").exists()


def test_new_run_supersedes_in_flight_run(tmp_path, make_executor, push_master) -> None:
    # the first run blocks; the second sees the marker and finishes at once
    pipeline = wf(job("build", sh("build", "if [ -f first.ran ]; then exit 0; fi; touch first.ran; sleep 30")))
    executor = make_executor(pipeline)

    first = executor.start(push_master)
    assert wait_for(lambda: (tmp_path / "first.ran").exists())
    second = executor.start(push_master)

    assert first.wait(timeout=10).status is PipelineStatus.CANCELLED
    assert second.wait(timeout=10).status is PipelineStatus.SUCCEEDED


def test_background_run_reraises_cycle_error(make_executor, push_master) -> None:
    pipeline = wf(job("a", sh("a", "true"), needs=["a"]))
    executor = make_executor(pipeline)

    for _ in range(50):
        run = executor.start(push_master)
        with pytest.raises(CycleError):
            run.wait(timeout=10)
        assert run.done
        assert run.result is None


def test_load_workflow_variants(tmp_path) -> None:
    (tmp_path / "fn_workflow.py").write_text(
        "from relayci.dsl import wf, job, sh\n"
        "def workflow():\n"
        "    return wf(job('a', sh('a', 'true')), name='fn')\n"
    )
    (tmp_path / "jobs_workflow.py").write_text(
        "from relayci.dsl import job, sh\n"
        "JOBS = [job('a', sh('a', 'true'))]\n"
    )
    (tmp_path / "bad_workflow.py").write_text("JOBS = 'nope'\n")

    assert load_workflow(tmp_path / "fn_workflow.py").name == "fn"
    assert load_workflow(tmp_path / "jobs_workflow.py").name == "jobs_workflow"
    with pytest.raises(TypeError):
        load_workflow(tmp_path / "bad_workflow.py")
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "missing.py")


def test_repository_workflow_describes_the_rust_pipeline() -> None:
    pipeline = load_workflow(REPO_ROOT / "relayci_workflow.py")

    assert [j.name for j in pipeline.jobs] == ["lint", "build", "test"]
    assert pipeline.job("test").needs == ["build"]
    assert pipeline.env == {"CARGO_TERM_COLOR": "always"}
    for j in pipeline.jobs:
        assert j.env == {"CARGO_INCREMENTAL": "1"}
        assert j.cache.hash_files == ("**/Cargo.lock",)
        assert j.cache.paths == ("~/.cargo/registry", "~/.cargo/git", "target")
    assert pipeline.on.push == ("master",)
    assert pipeline.on.pull_request == ("master",)
