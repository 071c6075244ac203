"""Postgres storage entrypoint."""

from .base import BaseStore
from .job_store import JOB_STATES, Job, JobStore, QueueSpec
from .pool import create_pool

__all__ = [
    "BaseStore",
    "JOB_STATES",
    "Job",
    "JobStore",
    "QueueSpec",
    "create_pool",
]
