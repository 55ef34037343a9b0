from __future__ import annotations
import os


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


CACHE_DIR = os.environ.get("RELAYCI_CACHE_DIR", ".relayci/cache")
CACHE_KEEP = int(os.environ.get("RELAYCI_CACHE_KEEP", "5"))
WORKERS = int(os.environ.get("RELAYCI_WORKERS", "0")) or _default_workers()
LOG_LEVEL = os.environ.get("RELAYCI_LOG_LEVEL", "INFO").upper()
WORKFLOW = os.environ.get("RELAYCI_WORKFLOW", "relayci_workflow.py")
LOG_FILE = os.environ.get("RELAYCI_LOG_FILE")
# how much of a failing command's output is kept on its result
OUTPUT_TAIL = 4000
