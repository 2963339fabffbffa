"""Background jobs for the follow-up engine."""

from src.jobs.follow_up_discovery_job import run_follow_up_discovery
from src.jobs.follow_up_send_job import run_due_follow_up_sends

__all__ = [
    "run_due_follow_up_sends",
    "run_follow_up_discovery",
]
