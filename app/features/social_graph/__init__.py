"""
Social graph feature package.

Vertical slice that imports a user's following list, resolves each account
to a reading-platform profile and harvests their reading activity into a
feed. Domain models, clients, resolution tiers, repositories, jobs,
services and the API router live side by side here.
"""

# Re-export the primary building blocks for easy access.
from .api.router import router as social_graph_router  # noqa: F401
from .context import JobContext, build_job_context  # noqa: F401
from .jobs import JOB_HANDLERS  # noqa: F401
from .resolution.pipeline import ResolutionPipeline  # noqa: F401
