"""
Job payload models. Payloads travel as JSON inside a JobEnvelope.
"""

from pydantic import BaseModel


class ImportJobPayload(BaseModel):
    """Payload for import and refresh jobs."""

    import_id: str
    user_id: str
    source_account_id: str
    access_token: str
    source_handle: str | None = None


class ResolveJobPayload(BaseModel):
    connection_id: str
    import_id: str


class ActivityJobPayload(BaseModel):
    connection_id: str
    target_user_id: str
