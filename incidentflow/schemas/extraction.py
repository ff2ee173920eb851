from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

SCHEMA_VERSION = "event_extraction_v1"


class _Block(BaseModel):
    model_config = ConfigDict(extra="allow")


class EventTypeBlock(_Block):
    primary: str = Field(min_length=1)
    secondary: str | None = None


class SeverityBlock(_Block):
    level: int = Field(ge=1, le=5, strict=True)
    rationale: str | None = None


class ConfidenceBlock(_Block):
    extraction: float = Field(ge=0, le=1)
    geolocation: float | None = Field(default=None, ge=0, le=1)


class GeometryBlock(_Block):
    type: str = "Point"
    coordinates: list[float] | None = None
    precision: str | None = None

    @field_validator("coordinates")
    @classmethod
    def _two_coordinates(cls, value: list[float] | None) -> list[float] | None:
        if value is not None and len(value) != 2:
            raise ValueError("coordinates must be [longitude, latitude]")
        return value


class AdminBlock(_Block):
    country: str
    admin1: str | None = None
    admin2: str | None = None
    locality: str | None = None


class LocationBlock(_Block):
    geometry: GeometryBlock | None = None
    admin: AdminBlock
    description: str | None = None


class TemporalBlock(_Block):
    start_date: str | None = None
    end_date: str | None = None
    is_ongoing: bool | None = None


class SummaryBlock(_Block):
    short: str = Field(min_length=1)
    detailed: str | None = None


class SourceRefBlock(_Block):
    url: str | None = None
    publisher: str | None = None
    published_at: str | None = None


class ClassificationBlock(_Block):
    is_classroom_safe: bool | None = None
    classroom_topic_tags: list[str] = Field(default_factory=list)


class EventExtraction(BaseModel):
    """Structured event payload returned by the extraction capability."""

    model_config = ConfigDict(extra="allow")

    schema_version: Literal["event_extraction_v1"]
    title: str = Field(min_length=1)
    event_type: EventTypeBlock
    severity: SeverityBlock
    confidence: ConfidenceBlock
    location: LocationBlock
    temporal: TemporalBlock
    summary: SummaryBlock
    source_ref: SourceRefBlock
    classification: ClassificationBlock | None = None

    @property
    def coordinates(self) -> tuple[float, float] | None:
        """Return ``(lng, lat)`` when the payload carries a point."""
        geometry = self.location.geometry
        if geometry is None or not geometry.coordinates:
            return None
        return geometry.coordinates[0], geometry.coordinates[1]

    def clear_coordinates(self) -> None:
        self.location.geometry = None


def validate_extraction(payload: Any) -> tuple[EventExtraction | None, list[str]]:
    if not isinstance(payload, dict):
        return None, ["(root): expected a JSON object"]
    try:
        return EventExtraction.model_validate(payload), []
    except ValidationError as exc:
        return None, format_validation_errors(exc)


def format_validation_errors(exc: ValidationError, limit: int = 12) -> list[str]:
    lines: list[str] = []
    for error in exc.errors()[:limit]:
        path = "/".join(str(part) for part in error.get("loc", ())) or "(root)"
        lines.append(f"{path}: {error.get('msg', 'invalid')}")
    if exc.error_count() > limit:
        lines.append(f"(+{exc.error_count() - limit} more)")
    return lines
