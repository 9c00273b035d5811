import os

# Must be set before apps.api.database is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("OPENAI_API_KEY", "test-key")

from typing import Any, Dict, List

import fakeredis
import pytest
from pydantic import BaseModel

from apps.api import models
from apps.api.database import Base, SessionLocal, engine
from apps.api.seed import seed_reference_data
from services.bus.bus import EventBus
from services.config import Settings
from services.container import build_services
from services.queue.queue import Job, QueueName


class FakeGenerator:
    """
    Scripted stand-in for StructuredGenerator.

    Responses are queued per schema class name ("InsightDetection",
    "IntentionDetection", "SentimentAnalysis"). A queued exception is raised.
    With nothing queued the schema's empty default is returned.
    """

    def __init__(self):
        self.responses: Dict[str, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []

    def queue(self, schema_name: str, response: Any) -> "FakeGenerator":
        self.responses.setdefault(schema_name, []).append(response)
        return self

    def generate_object(self, messages, schema, **kwargs) -> BaseModel:
        self.calls.append({"schema": schema.__name__, "messages": messages, **kwargs})
        pending = self.responses.get(schema.__name__)
        if not pending:
            return schema()
        response = pending.pop(0)
        if isinstance(response, BaseException):
            raise response
        return schema.model_validate(response)

    def schemas_called(self) -> List[str]:
        return [call["schema"] for call in self.calls]


@pytest.fixture
def db_engine():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        seed_reference_data(session)
    finally:
        session.close()

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(db_engine):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        app_env="test",
        run_worker=False,
        seed_on_startup=False,
    )


@pytest.fixture
def redis_conn():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorded_events(bus):
    events = []
    bus.subscribe_all(lambda evt: events.append(evt))
    return events


@pytest.fixture
def services(db_engine, settings, redis_conn, generator, bus):
    return build_services(settings, SessionLocal, connection=redis_conn, generator=generator, bus=bus)


@pytest.fixture
def make_comments(db):
    def _make(*contents: str) -> List[str]:
        comments = [models.Comment(content=c, source="test") for c in contents]
        db.add_all(comments)
        db.flush()
        ids = [c.id for c in comments]
        db.commit()
        return ids

    return _make


@pytest.fixture
def make_insight(db):
    def _make(name: str, description: str = "") -> int:
        insight = models.Insight(name=name, content=name, description=description or name, ai_generated=False)
        db.add(insight)
        db.flush()
        insight_id = insight.id
        db.commit()
        return insight_id

    return _make


@pytest.fixture
def make_job():
    def _make(comment_ids: List[str], job_id: str = "1") -> Job:
        return Job(
            id=job_id,
            name="analyze-batch-0",
            queue_name=QueueName.ANALYZE_COMMENTS_BATCH.value,
            data={"commentIds": comment_ids, "metadata": {"batchIndex": 0, "totalBatches": 1}},
        )

    return _make


@pytest.fixture
def fetch_all(db_engine):
    """Reads rows through a short-lived session so no transaction is left open."""

    def _fetch(model, *criteria):
        with SessionLocal() as session:
            return session.query(model).filter(*criteria).all()

    return _fetch
