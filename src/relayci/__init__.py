from .dsl import job, sh, cache, on, wf, JobBuilder, build
from .dag import CycleError, resolve, topo_levels
from .cache import CacheIOError, CacheStore
from .model import Job, Step, Pipeline, Trigger, JobStatus, PipelineStatus
from .runner import CommandError, PipelineExecutor, PipelineRun, load_workflow

__all__ = [
    "job", "sh", "cache", "on", "wf", "JobBuilder", "build",
    "CycleError", "resolve", "topo_levels",
    "CacheIOError", "CacheStore",
    "Job", "Step", "Pipeline", "Trigger", "JobStatus", "PipelineStatus",
    "CommandError", "PipelineExecutor", "PipelineRun", "load_workflow",
]
