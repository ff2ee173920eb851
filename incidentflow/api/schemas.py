from typing import Literal

from pydantic import BaseModel, Field

ModelHint = Literal["openai", "anthropic", "gemini"]


class ExtractRequest(BaseModel):
    force_reextract: bool = False
    model_hint: ModelHint | None = None


class ClusterRequest(BaseModel):
    window_hours: int | None = Field(default=None, ge=1)
    # Queue-level delay before the job becomes visible; the queue caps it at 15 minutes.
    delay_seconds: int = Field(default=0, ge=0, le=900)


class BatchExtractRequest(BaseModel):
    source_ids: list[int] = Field(min_length=1, max_length=500)
    force_reextract: bool = False
    model_hint: ModelHint | None = None


class JobAccepted(BaseModel):
    job_id: str
    job_type: str
    correlation_id: str
    queue: str
    message_id: str


class BatchAccepted(BaseModel):
    queue: str
    correlation_id: str
    successful: list[str]
    failed: list[str]
