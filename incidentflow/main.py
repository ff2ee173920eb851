from __future__ import annotations

import asyncio
import logging
import signal

from incidentflow.core.config import QueueConfig, Settings, get_settings
from incidentflow.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from incidentflow.jobs.context import DEFAULT_CAPABILITY, JobContext
from incidentflow.services.extraction_client import ExtractionCapability, OpenAIExtractionClient
from incidentflow.services.queue_client import get_queue_client
from incidentflow.services.repository import get_repository
from incidentflow.worker import Consumer

logger = logging.getLogger(__name__)


def build_capabilities(settings: Settings) -> dict[str, ExtractionCapability]:
    return {
        DEFAULT_CAPABILITY: OpenAIExtractionClient(
            model=settings.openai_extract_model,
            api_key=settings.openai_api_key,
            timeout_seconds=settings.extraction_timeout_seconds,
        )
    }


def check_worker_queues(settings: Settings, config: QueueConfig) -> None:
    unknown = [name for name in settings.worker_queues if name not in config.names]
    if unknown:
        raise ValueError(f"unknown worker queues: {', '.join(unknown)} (known: {', '.join(config.names)})")


def install_signal_handlers(consumer: Consumer) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, consumer.request_stop, sig.name)
        except NotImplementedError:
            logger.warning("signal handlers unsupported on this platform signal=%s", sig.name)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings)
    queue = get_queue_client()
    check_worker_queues(settings, queue.config)
    repository = get_repository()
    context = JobContext(
        settings=settings,
        repository=repository,
        queue=queue,
        capabilities=build_capabilities(settings),
    )
    consumer = Consumer.from_settings(settings, queue=queue, context=context)
    install_signal_handlers(consumer)

    try:
        await consumer.run()
    finally:
        await queue.close()
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
