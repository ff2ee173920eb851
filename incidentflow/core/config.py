from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "incidentflow-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    extract_queue_name: str = "extract"
    extract_dead_letter_queue_name: str = "extract-dlq"
    cluster_queue_name: str = "cluster"
    cluster_dead_letter_queue_name: str = "cluster-dlq"
    queue_max_receive_count: int = 5
    queue_long_poll_interval_seconds: float = 1.0

    worker_queues: list[str] = ["q_extract", "q_cluster"]
    worker_max_messages: int = 5
    worker_wait_seconds: int = 20
    worker_visibility_timeout_seconds: int = 120
    worker_max_app_retries: int = 2
    worker_retry_base_delay_seconds: float = 30.0
    worker_shutdown_grace_seconds: float = 10.0
    worker_max_in_flight: int = 1
    worker_poll_error_pause_seconds: float = 1.0

    openai_api_key: str | None = None
    openai_extract_model: str = "gpt-4-turbo"
    extraction_timeout_seconds: float = 60.0
    extraction_min_source_chars: int = 200
    extraction_max_source_chars: int = 20_000

    cluster_time_window_hours: int = 72
    cluster_max_distance_km: float = 50.0
    cluster_min_similarity_score: float = 0.7
    cluster_source_confidence_boost: float = 0.05
    cluster_max_boosted_confidence: float = 0.98
    cluster_max_candidates: int = 50

    api_key: str = "local-producer-key"
    api_key_header: str = "X-API-Key"

    otel_enabled: bool = True
    otel_service_name: str = "incidentflow-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="IF_", extra="ignore")


@dataclass(frozen=True, slots=True)
class QueueRoute:
    name: str
    physical_name: str
    dead_letter_name: str
    max_receive_count: int


@dataclass(frozen=True, slots=True)
class QueueConfig:
    """Logical queue name -> provider queue mapping, built once per process."""

    routes: dict[str, QueueRoute]

    def route(self, queue: str) -> QueueRoute:
        try:
            return self.routes[queue]
        except KeyError as exc:
            raise ValueError(f"unknown queue: {queue}") from exc

    @property
    def names(self) -> list[str]:
        return list(self.routes)


def build_queue_config(settings: Settings) -> QueueConfig:
    max_receive_count = max(1, settings.queue_max_receive_count)
    return QueueConfig(
        routes={
            "q_extract": QueueRoute(
                name="q_extract",
                physical_name=settings.extract_queue_name,
                dead_letter_name=settings.extract_dead_letter_queue_name,
                max_receive_count=max_receive_count,
            ),
            "q_cluster": QueueRoute(
                name="q_cluster",
                physical_name=settings.cluster_queue_name,
                dead_letter_name=settings.cluster_dead_letter_queue_name,
                max_receive_count=max_receive_count,
            ),
        }
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
