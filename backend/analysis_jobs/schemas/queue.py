"""Wire format of jobs on the durable queue."""
from typing import Optional
from pydantic import Field
from analysis_jobs.schemas.base import CamelModel


class QueueEnvelope(CamelModel):
    """Broker-side copy of everything needed to re-execute a job.

    Serialized as camelCase JSON. The credential is excluded from repr so
    envelopes can be logged safely.
    """
    job_id: str
    user_id: str
    template_id: str = ""
    model_id: str = ""
    provider: str = ""
    file_name: str = ""
    file_content: str = Field(default="", repr=False)
    api_key: str = Field(default="", repr=False)
    retry_count: int = 0

    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    last_attempt: Optional[int] = None
    created_at: int = 0

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_wire(cls, raw: str | bytes) -> "QueueEnvelope":
        return cls.model_validate_json(raw)


class QueueStats(CamelModel):
    pending: int
    processing: int
    retrying: int
