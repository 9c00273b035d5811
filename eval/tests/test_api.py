import fakeredis
import pytest
from fastapi.testclient import TestClient

from apps.api import crud
from apps.api.database import SessionLocal
from apps.api.main import create_app
from services.container import build_services


@pytest.fixture
def client(settings, services):
    app = create_app(settings=settings, services=services)
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_metrics_are_exposed(client):
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "analysis_jobs_enqueued_total" in r.text


def test_create_and_read_comment(client):
    r = client.post("/comments", json={"comments": [{"content": "App crashes on login", "source": "app_store"}]})
    assert r.status_code == 201
    created = r.json()
    assert len(created) == 1
    assert created[0]["content"] == "App crashes on login"

    r = client.get(f"/comments/{created[0]['id']}")
    assert r.status_code == 200
    body = r.json()
    assert body["comment"]["source"] == "app_store"
    assert body["insights"] == []
    assert body["intentions"] == []


def test_unknown_comment_is_404(client):
    assert client.get("/comments/does-not-exist").status_code == 404


def test_empty_comment_list_is_rejected(client):
    assert client.post("/comments", json={"comments": []}).status_code == 422


def test_analyze_queues_batches(client, services):
    ids = [f"c{i}" for i in range(7)]

    r = client.post("/processing/analyze", json={"commentIds": ids, "metadata": {"source": "survey"}})

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["details"]["jobsCreated"] == 2
    assert [b["size"] for b in body["details"]["batches"]] == [5, 2]
    assert services.analysis_queue.counts()["waiting"] == 2


def test_analyze_requires_comment_ids(client):
    assert client.post("/processing/analyze", json={"commentIds": []}).status_code == 422


def test_analyze_reports_queue_outage(settings, db_engine, generator, bus):
    server = fakeredis.FakeServer()
    server.connected = False
    services = build_services(
        settings,
        SessionLocal,
        connection=fakeredis.FakeRedis(server=server, decode_responses=True),
        generator=generator,
        bus=bus,
    )

    with TestClient(create_app(settings=settings, services=services)) as client:
        r = client.post("/processing/analyze", json={"commentIds": ["a"]})

    assert r.status_code == 503


def test_agent_logs_are_paginated(client, db, make_comments):
    (comment_id,) = make_comments("App crashes on login")
    for job_id in ("1", "2", "3"):
        crud.upsert_agent_log(
            db,
            job_id=job_id,
            comment_id=comment_id,
            agent_name="leti",
            processing_time_ms=12,
            success=True,
            metadata={"agentName": "leti", "data": {"commentId": comment_id}},
        )
    crud.upsert_agent_log(
        db,
        job_id="1",
        comment_id=comment_id,
        agent_name="gro",
        processing_time_ms=5,
        success=False,
        metadata={"agentName": "gro", "data": {}},
        error_message="boom",
    )
    db.commit()

    r = client.get("/agent-logs", params={"agent_name": "leti", "limit": 2})
    assert r.status_code == 200
    body = r.json()
    assert body["pagination"] == {"total": 3, "limit": 2, "offset": 0, "hasMore": True}
    assert len(body["logs"]) == 2
    assert body["logs"][0]["metadata"]["agentName"] == "leti"

    r = client.get("/agent-logs", params={"success": False})
    logs = r.json()["logs"]
    assert [log["agent_name"] for log in logs] == ["gro"]
    assert logs[0]["error_message"] == "boom"


def test_agent_logs_validate_query(client):
    assert client.get("/agent-logs", params={"limit": 500}).status_code == 422
    assert client.get("/agent-logs", params={"agent_name": "bob"}).status_code == 422
