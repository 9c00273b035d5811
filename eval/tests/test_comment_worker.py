import threading

from agents.comment_analysis.events import client_type
from agents.comment_analysis.runner import create_worker
from agents.comment_analysis.submission import enqueue_comment_analysis
from apps.api import models
from services.queue.queue import JobCompleted


def test_queued_batch_is_analyzed_by_the_worker(services, generator, bus, recorded_events, make_comments, make_insight, fetch_all):
    insight_id = make_insight("app crashes")
    ids = make_comments("App crashes on login", "Crashes every time I open it")
    generator.queue(
        "InsightDetection",
        {
            "results": [
                {"commentIndex": 0, "detectedInsights": [{"insightName": "app crashes", "confidence": 9}]},
                {"commentIndex": 1, "detectedInsights": [{"insightName": "app crashes", "confidence": 8}]},
            ]
        },
    )

    finished = []
    done = threading.Event()

    def on_completed(evt):
        finished.append(evt.properties)
        done.set()

    bus.subscribe(JobCompleted, on_completed)
    summary = enqueue_comment_analysis(services.analysis_queue, ids, {"source": "survey"})
    job_id = summary["details"]["batches"][0]["jobId"]

    worker = create_worker(services, poll_interval=0.1)
    worker.start()
    try:
        assert done.wait(timeout=10)
    finally:
        worker.close()

    rows = fetch_all(models.CommentInsight)
    assert sorted(row.comment_id for row in rows) == sorted(ids)
    assert {row.insight_id for row in rows} == {insight_id}

    stored = services.analysis_queue.get_job(job_id)
    assert stored.state == "completed"
    assert stored.attempts_made == 1
    assert stored.return_value["processedComments"] == 2
    assert stored.return_value["detectedInsights"] == 2
    assert sorted(stored.return_value["commentInsightIds"]) == sorted(row.id for row in rows)

    assert finished[0].job_id == job_id
    assert finished[0].result == stored.return_value
    assert services.analysis_queue.counts()["active"] == 0

    types = [client_type(evt.type) for evt in recorded_events if evt.type.startswith("analyze-comments-batch.")]
    assert types[0] == "job:started"
    assert types[-1] == "job:completed"
