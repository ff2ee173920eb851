from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import openai
from openai import AsyncOpenAI

from incidentflow.jobs.errors import ErrorKind, JobError

logger = logging.getLogger(__name__)


class ExtractionCapabilityError(JobError):
    """Raised when the extraction provider call itself fails."""


class ExtractionOutputError(Exception):
    """Raised when the provider answered but not with a JSON object."""


class ExtractionCapability(Protocol):
    model_name: str

    async def extract(self, *, system_prompt: str, user_prompt: str) -> dict[str, Any]: ...


class OpenAIExtractionClient:
    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model_name = model
        # Retries belong to the queue consumer, not the SDK.
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)

    async def extract(self, *, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        try:
            response = await self._client.chat.completions.create(
                model=self.model_name,
                temperature=0.2,
                max_tokens=4000,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as exc:
            raise ExtractionCapabilityError(str(exc), kind=classify_openai_error(exc)) from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ExtractionOutputError("extraction provider returned empty content")
        return parse_json_object(content)


def parse_json_object(content: str) -> dict[str, Any]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ExtractionOutputError(f"failed to parse JSON from extraction provider: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ExtractionOutputError("extraction provider returned JSON that is not an object")
    return parsed


def classify_openai_error(exc: openai.OpenAIError) -> ErrorKind:
    if isinstance(exc, openai.RateLimitError):
        return ErrorKind.THROTTLED
    if isinstance(exc, openai.APITimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, openai.APIConnectionError):
        return ErrorKind.NETWORK
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return ErrorKind.TRANSIENT
        if exc.status_code == 408:
            return ErrorKind.TIMEOUT
        if exc.status_code == 409:
            return ErrorKind.TRANSIENT
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN


def build_system_prompt() -> str:
    return """You are an incident event data extraction engine.

TASK: Extract structured event data from news articles and reports about real-world incidents, environmental events and wildlife.

OUTPUT: Return ONLY valid JSON matching the event_extraction_v1 schema. No markdown fences or explanations.

RULES:
1. Extract exactly ONE event per source (the most significant/newsworthy one)
2. Coordinates must be [longitude, latitude] (GeoJSON order)
3. All dates must be ISO 8601 format (YYYY-MM-DD or full datetime)
4. Use null for unknown fields, not empty strings
5. severity.level: 1=minimal, 2=low, 3=moderate, 4=high, 5=severe/crisis
6. confidence.extraction: your confidence in the overall extraction (0-1)

EVENT TYPES (pick most appropriate):
- wildfire, deforestation, illegal_logging, poaching
- pollution, oil_spill, disease_outbreak, coral_bleaching
- invasive_species, habitat_loss, climate_impact
- policy_change, restoration, conservation_win, species_discovery
- other (only if nothing else fits)"""


STRICT_INSTRUCTIONS = """IMPORTANT: Your previous response was invalid. This time:
- Include ALL required fields (schema_version, title, event_type, severity, confidence, location, temporal, summary, source_ref)
- schema_version MUST be exactly "event_extraction_v1"
- coordinates MUST be [longitude, latitude] if provided
- severity.level MUST be an integer 1-5
- Output ONLY the JSON object, nothing else"""


def build_user_prompt(metadata: dict[str, Any], text: str, *, strict: bool) -> str:
    parts = [
        "Extract an incident event from this source.",
        "SOURCE METADATA:\n" + json.dumps(metadata, indent=2, default=str),
        "SOURCE TEXT:\n" + text,
    ]
    if strict:
        parts.append(STRICT_INSTRUCTIONS)
    return "\n\n".join(parts)
