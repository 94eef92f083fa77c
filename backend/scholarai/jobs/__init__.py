from scholarai.jobs.base import (
    FailOutcome,
    Job,
    JobQueue,
    JobState,
    Lease,
    backoff_delay,
    job_id_for,
)
from scholarai.jobs.limiter import ThroughputLimiter
from scholarai.jobs.memory import InMemoryJobQueue

__all__ = [
    "FailOutcome",
    "Job",
    "JobQueue",
    "JobState",
    "Lease",
    "backoff_delay",
    "job_id_for",
    "InMemoryJobQueue",
    "ThroughputLimiter",
]
