from __future__ import annotations

from dataclasses import dataclass, field

from incidentflow.core.config import Settings
from incidentflow.services.extraction_client import ExtractionCapability
from incidentflow.services.queue_client import QueueClient
from incidentflow.services.repository import PostgresRepository

DEFAULT_CAPABILITY = "openai"


@dataclass(slots=True)
class JobContext:
    """Collaborators shared by every job handler in one worker process."""

    settings: Settings
    repository: PostgresRepository
    queue: QueueClient
    capabilities: dict[str, ExtractionCapability] = field(default_factory=dict)

    def capability_for(self, hint: str | None) -> ExtractionCapability:
        if hint and hint in self.capabilities:
            return self.capabilities[hint]
        try:
            return self.capabilities[DEFAULT_CAPABILITY]
        except KeyError as exc:
            raise LookupError("no default extraction capability configured") from exc
