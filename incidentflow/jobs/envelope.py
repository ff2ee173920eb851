from __future__ import annotations

import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from incidentflow.schemas.extraction import format_validation_errors

ENVELOPE_VERSION = "job_v1"


class JobType(str, Enum):
    EXTRACT = "EXTRACT"
    CLUSTER = "CLUSTER"


JOB_TYPES = {job_type.value for job_type in JobType}
ROUTE_BY_JOB_TYPE: dict[JobType, str] = {
    JobType.EXTRACT: "q_extract",
    JobType.CLUSTER: "q_cluster",
}

MetaValue = str | int | float | bool | None


class ExtractPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source_id: int
    force_reextract: bool = False
    model_hint: str | None = None


class ClusterPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_id: int | None = None
    window_hours: int | None = Field(default=None, ge=1)


class _EnvelopeBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: Literal["job_v1"] = ENVELOPE_VERSION
    job_id: str = Field(min_length=1)
    correlation_id: str = Field(min_length=1)
    enqueued_at: datetime
    attempt: int | None = Field(default=None, ge=0)
    meta: dict[str, MetaValue] | None = None

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)


class ExtractJob(_EnvelopeBase):
    job_type: Literal["EXTRACT"] = "EXTRACT"
    payload: ExtractPayload


class ClusterJob(_EnvelopeBase):
    job_type: Literal["CLUSTER"] = "CLUSTER"
    payload: ClusterPayload


JobEnvelope = Annotated[ExtractJob | ClusterJob, Field(discriminator="job_type")]
_ENVELOPE_ADAPTER: TypeAdapter[ExtractJob | ClusterJob] = TypeAdapter(JobEnvelope)

_REQUIRED_FIELDS = ("version", "job_type", "job_id", "correlation_id", "enqueued_at", "payload")


class PoisonReason(str, Enum):
    UNPARSABLE_BODY = "unparsable_body"
    INVALID_ENVELOPE = "invalid_envelope"
    UNKNOWN_JOB_TYPE = "unknown_job_type"


@dataclass(slots=True)
class EnvelopeParseResult:
    envelope: ExtractJob | ClusterJob | None
    poison_reason: PoisonReason | None = None
    detail: str | None = None
    job_type: str | None = None


def parse_envelope(raw_body: str | bytes) -> EnvelopeParseResult:
    try:
        candidate = json.loads(raw_body)
    except (TypeError, ValueError) as exc:
        return EnvelopeParseResult(envelope=None, poison_reason=PoisonReason.UNPARSABLE_BODY, detail=str(exc))

    if not isinstance(candidate, dict):
        return EnvelopeParseResult(
            envelope=None,
            poison_reason=PoisonReason.INVALID_ENVELOPE,
            detail="envelope must be a JSON object",
        )

    missing = [name for name in _REQUIRED_FIELDS if candidate.get(name) is None]
    if missing:
        return EnvelopeParseResult(
            envelope=None,
            poison_reason=PoisonReason.INVALID_ENVELOPE,
            detail=f"missing required fields: {', '.join(missing)}",
        )

    job_type = candidate.get("job_type")
    if not isinstance(job_type, str) or job_type not in JOB_TYPES:
        return EnvelopeParseResult(
            envelope=None,
            poison_reason=PoisonReason.UNKNOWN_JOB_TYPE,
            detail=f"unknown job_type: {job_type!r}",
            job_type=str(job_type),
        )

    try:
        envelope = _ENVELOPE_ADAPTER.validate_python(candidate)
    except ValidationError as exc:
        return EnvelopeParseResult(
            envelope=None,
            poison_reason=PoisonReason.INVALID_ENVELOPE,
            detail="; ".join(format_validation_errors(exc)),
            job_type=job_type,
        )
    return EnvelopeParseResult(envelope=envelope, job_type=job_type)


def create_job_message(
    job_type: JobType,
    payload: dict[str, Any] | BaseModel,
    correlation_id: str | None = None,
    *,
    meta: dict[str, MetaValue] | None = None,
) -> ExtractJob | ClusterJob:
    """Build a fresh envelope; the correlation id is propagated when given."""
    body = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
    return _ENVELOPE_ADAPTER.validate_python(
        {
            "version": ENVELOPE_VERSION,
            "job_type": JobType(job_type).value,
            "job_id": generate_job_id(),
            "correlation_id": correlation_id or generate_correlation_id(),
            "enqueued_at": datetime.now(timezone.utc),
            "meta": meta,
            "payload": body,
        }
    )


def generate_job_id() -> str:
    return f"job_{_time_token()}_{secrets.token_hex(4)}"


def generate_correlation_id() -> str:
    return f"corr_{_time_token()}_{secrets.token_hex(4)}"


def _time_token() -> str:
    return _base36(int(time.time() * 1000))


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        out.append(digits[remainder])
    return "".join(reversed(out))
