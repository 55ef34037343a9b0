# relayci_workflow.py
# Rust crate pipeline: clippy and build in parallel, tests once the build is green.
from __future__ import annotations

from relayci.dsl import cache, job, on, sh, wf

# shared by every job; the key only changes when Cargo.lock does
CARGO_CACHE = cache(
    "~/.cargo/registry",
    "~/.cargo/git",
    "target",
    hash_files=["**/Cargo.lock"],
    key="{os}-cargo-{hash}",
)

INCREMENTAL = {"CARGO_INCREMENTAL": "1"}


def workflow():
    return wf(
        job("lint", sh("lint", "cargo clippy"), env=INCREMENTAL, cache=CARGO_CACHE),
        job("build", sh("Build", "cargo build --verbose"), env=INCREMENTAL, cache=CARGO_CACHE),
        job(
            "test",
            sh("Run tests", "cargo test"),
            needs=["build"],
            env=INCREMENTAL,
            cache=CARGO_CACHE,
        ),
        name="rust",
        on=on(push=["master"], pull_request=["master"]),
        env={"CARGO_TERM_COLOR": "always"},
    )
