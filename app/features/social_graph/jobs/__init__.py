"""
Job handlers for the social graph feature.

JOB_HANDLERS maps each job kind to a coroutine taking the raw payload dict
and the JobContext.
"""

from .activity_job import run_activity
from .import_job import run_import, run_refresh
from .payloads import ActivityJobPayload, ImportJobPayload, ResolveJobPayload
from .resolve_job import run_resolve

JOB_HANDLERS = {
    "import": run_import,
    "resolve": run_resolve,
    "activity": run_activity,
    "refresh": run_refresh,
}

__all__ = [
    "JOB_HANDLERS",
    "ActivityJobPayload",
    "ImportJobPayload",
    "ResolveJobPayload",
]
