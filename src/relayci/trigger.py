# trigger.py
from __future__ import annotations

import os
import re
from fnmatch import fnmatchcase
from typing import Mapping, Optional

from .model import Trigger, TriggerFilter

EVENTS = ("push", "pull_request")

_PR_REF = re.compile(r"^refs/pull/(\d+)/")


def matches(filter: Optional[TriggerFilter], trigger: Trigger) -> bool:
    """
    Should `trigger` activate a pipeline guarded by `filter`?

    No filter activates on anything. Otherwise the event kind must have an
    allow-list and the branch must match one of its globs.
    """
    if filter is None:
        return True
    if trigger.event not in EVENTS:
        return False
    branches = getattr(filter, trigger.event)
    if branches is None:
        return False
    return any(fnmatchcase(trigger.branch, pattern) for pattern in branches)


def trigger_from_env(environ: Mapping[str, str] | None = None) -> Optional[Trigger]:
    """
    Build a Trigger from the variables a hosted runner exports.

    Returns None when the process is not running under such a runner.
    """
    env = os.environ if environ is None else environ
    event = env.get("GITHUB_EVENT_NAME")
    if not event:
        return None

    if event == "pull_request":
        branch = env.get("GITHUB_BASE_REF", "")
        m = _PR_REF.match(env.get("GITHUB_REF", ""))
        pr_number = int(m.group(1)) if m else None
    else:
        branch = env.get("GITHUB_REF_NAME", "")
        pr_number = None

    return Trigger(
        event=event,
        branch=branch,
        sha=env.get("GITHUB_SHA") or None,
        pr_number=pr_number,
    )


def concurrency_group(pipeline_name: str, trigger: Trigger) -> str:
    """Runs in the same group supersede each other."""
    if trigger.event == "pull_request" and trigger.pr_number is not None:
        return f"{pipeline_name}:pr-{trigger.pr_number}"
    return f"{pipeline_name}:{trigger.event}:{trigger.branch}"
