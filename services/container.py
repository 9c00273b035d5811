"""
Service container.

Everything with a lifecycle (Redis connection, queues, workers, template
cache, model factory) is built once at process start and handed to the
API and the worker explicitly. `close()` tears it down on shutdown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import redis
from sqlalchemy.orm import Session

from services.bus.bus import EventBus
from services.config import Settings
from services.llm.client import StructuredGenerator
from services.llm.prompts import PromptCompiler
from services.queue.queue import JobQueue, QueueFactory, QueueName


logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    bus: EventBus
    generator: StructuredGenerator
    prompts: PromptCompiler
    session_factory: Callable[[], Session]
    connection: redis.Redis
    queues: QueueFactory

    @property
    def analysis_queue(self) -> JobQueue:
        return self.queues.create_queue(QueueName.ANALYZE_COMMENTS_BATCH.value)

    def close(self) -> None:
        self.queues.close()
        try:
            self.connection.close()
        except redis.RedisError:
            logger.warning("Failed to close Redis connection cleanly", exc_info=True)


def build_services(
    settings: Settings,
    session_factory: Callable[[], Session],
    connection: Optional[redis.Redis] = None,
    generator: Optional[StructuredGenerator] = None,
    bus: Optional[EventBus] = None,
) -> ServiceContainer:
    connection = connection or redis.from_url(settings.redis_url, decode_responses=True)
    bus = bus or EventBus()

    return ServiceContainer(
        settings=settings,
        bus=bus,
        generator=generator or StructuredGenerator(),
        prompts=PromptCompiler(),
        session_factory=session_factory,
        connection=connection,
        queues=QueueFactory(connection, bus),
    )
