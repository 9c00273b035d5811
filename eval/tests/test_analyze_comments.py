import pytest

from agents.comment_analysis.errors import AnalysisError, DataFetchError
from agents.comment_analysis.events import client_type
from agents.comment_analysis.runner import run_analysis
from apps.api import models
from services.llm.client import NoObjectGeneratedError, ProviderError, SchemaValidationError
from services.llm.prompts import PromptValidationError
from services.queue.errors import PreparedJobError
from services.queue.queue import JobOptions


def _insight_response(*items):
    return {"results": list(items)}


def _detected(comment_index, name, confidence=9, emergent=False, suggestions=()):
    return {
        "commentIndex": comment_index,
        "detectedInsights": [{"insightName": name, "confidence": confidence, "isEmergent": emergent}],
        "suggestedNewInsights": [{"name": n, "description": d} for n, d in suggestions],
    }


def _types(events):
    return [client_type(evt.type) for evt in events if evt.type.startswith("analyze-comments-batch.")]


def _states(events):
    return [
        (evt.properties.state, evt.properties.progress)
        for evt in events
        if client_type(evt.type) == "state:changed"
    ]


def test_existing_insight_is_linked(services, generator, recorded_events, make_comments, make_insight, make_job, fetch_all):
    insight_id = make_insight("app crashes")
    (comment_id,) = make_comments("App crashes on login")
    generator.queue("InsightDetection", _insight_response(_detected(0, "app crashes")))

    result = run_analysis(services, make_job([comment_id]))

    rows = fetch_all(models.CommentInsight)
    assert len(rows) == 1
    assert rows[0].comment_id == comment_id
    assert rows[0].insight_id == insight_id
    assert rows[0].confidence == 9
    assert rows[0].detected_by == "leti"

    assert len(fetch_all(models.Insight)) == 1
    assert result["processedComments"] == 1
    assert result["detectedInsights"] == 1
    assert result["newInsightsCreated"] == 0
    assert result["commentInsightIds"] == [rows[0].id]


def test_success_event_order(services, generator, recorded_events, make_comments, make_insight, make_job):
    make_insight("app crashes")
    ids = make_comments("App crashes on login")
    generator.queue("InsightDetection", _insight_response(_detected(0, "app crashes")))
    generator.queue(
        "SentimentAnalysis",
        {"results": [{"pairIndex": 0, "insightName": "app crashes", "sentimentLevel": "annoyance", "confidence": 7}]},
    )

    run_analysis(services, make_job(ids))

    types = _types(recorded_events)
    assert types[0] == "job:started"
    assert types[-2:] == ["state:changed", "job:completed"]

    # leti:* before gro:* before pix:*
    agents = [t.split(":")[0] for t in types if t.split(":")[0] in ("leti", "gro", "pix")]
    assert agents == sorted(agents, key=["leti", "gro", "pix"].index)

    assert _states(recorded_events) == [
        ("initializing", 0),
        ("fetching_data", 10),
        ("analyzing", 20),
        ("analyzing", 50),
        ("analyzing", 75),
        ("completed", 100),
    ]

    completed = recorded_events[-1].properties
    assert completed.job_id == "1"
    assert completed.result == {"processedComments": 1, "matchedInsights": 1, "createdInsights": 0}


def test_no_object_in_leti_still_completes(services, generator, recorded_events, make_comments, make_job, fetch_all):
    ids = make_comments("Great app")
    generator.queue("InsightDetection", NoObjectGeneratedError({"provider": "openai", "model": "gpt-4o-mini"}))

    result = run_analysis(services, make_job(ids))

    assert result["detectedInsights"] == 0
    assert result["sentimentsAnalyzed"] == 0
    assert fetch_all(models.CommentInsight) == []
    # PIX has nothing to analyze, so it never calls the model
    assert generator.schemas_called() == ["InsightDetection", "IntentionDetection"]
    assert _types(recorded_events)[-1] == "job:completed"


def test_unknown_non_emergent_insight_is_skipped(services, generator, make_comments, make_job, fetch_all):
    ids = make_comments("Where is my refund?")
    generator.queue("InsightDetection", _insight_response(_detected(0, "refund delays")))

    result = run_analysis(services, make_job(ids))

    assert fetch_all(models.CommentInsight) == []
    assert fetch_all(models.Insight) == []
    assert result["detectedInsights"] == 0


def test_emergent_insight_is_created_and_linked(services, generator, recorded_events, make_comments, make_job, fetch_all):
    ids = make_comments("Checkout takes forever")
    generator.queue(
        "InsightDetection",
        _insight_response(
            _detected(0, "slow checkout", confidence=7, emergent=True, suggestions=[("Slow Checkout", "Checkout is slow")])
        ),
    )

    result = run_analysis(services, make_job(ids))

    insights = fetch_all(models.Insight)
    assert [(i.name, i.ai_generated) for i in insights] == [("slow checkout", True)]

    links = fetch_all(models.CommentInsight)
    assert len(links) == 1
    assert links[0].insight_id == insights[0].id

    assert result["newInsightsCreated"] == 1
    assert "leti:insight:created" in _types(recorded_events)


def test_insight_upsert_is_idempotent_across_jobs(services, generator, make_comments, make_job, fetch_all):
    first = make_comments("Checkout takes forever")
    second = make_comments("Checkout is so slow")
    for _ in range(2):
        generator.queue(
            "InsightDetection",
            _insight_response(
                _detected(0, "slow checkout", emergent=True, suggestions=[("slow checkout", "Checkout is slow")])
            ),
        )

    run_analysis(services, make_job(first, job_id="1"))
    run_analysis(services, make_job(second, job_id="2"))

    insights = fetch_all(models.Insight)
    assert len(insights) == 1
    links = fetch_all(models.CommentInsight)
    assert len(links) == 2
    assert {link.insight_id for link in links} == {insights[0].id}


def test_agent_log_is_upserted_per_job_agent_comment(services, generator, make_comments, make_insight, make_job, fetch_all):
    make_insight("app crashes")
    ids = make_comments("App crashes on login")
    for _ in range(2):
        generator.queue("InsightDetection", _insight_response(_detected(0, "app crashes")))

    run_analysis(services, make_job(ids, job_id="7"))
    run_analysis(services, make_job(ids, job_id="7"))

    logs = fetch_all(models.AgentProcessingLog, models.AgentProcessingLog.agent_name == "leti")
    assert len(logs) == 1
    assert logs[0].job_id == "7"
    assert logs[0].comment_id == ids[0]
    assert logs[0].success is True


def test_intentions_are_stored(services, generator, recorded_events, make_comments, make_job, fetch_all):
    ids = make_comments("I want to cancel, the app is worse than the competitor")
    generator.queue(
        "IntentionDetection",
        {
            "results": [
                {
                    "commentIndex": 0,
                    "primaryIntention": "cancel",
                    "secondaryIntentions": ["compare", "complain"],
                    "confidence": 8,
                    "reasoning": "Explicit cancel request",
                }
            ]
        },
    )

    result = run_analysis(services, make_job(ids))

    rows = fetch_all(models.CommentIntention)
    assert len(rows) == 1
    assert rows[0].primary_intention == "cancel"
    assert rows[0].secondary_intentions == ["compare", "complain"]
    assert result["intentionsDetected"] == 1

    cancel = fetch_all(models.Intention, models.Intention.type == "cancel")[0]
    assert rows[0].intention_id == cancel.id
    assert "gro:intention:detected" in _types(recorded_events)


def test_sentiment_is_written_back(services, generator, recorded_events, make_comments, make_insight, make_job, fetch_all):
    make_insight("app crashes")
    ids = make_comments("App crashes on login, I lost my work")
    generator.queue("InsightDetection", _insight_response(_detected(0, "app crashes")))
    generator.queue(
        "SentimentAnalysis",
        {
            "results": [
                {
                    "pairIndex": 0,
                    "insightName": "app crashes",
                    "sentimentLevel": "frustration",
                    "confidence": 8,
                    "emotionalDrivers": ["lost work"],
                    "reasoning": "Repeated crashes",
                }
            ]
        },
    )

    result = run_analysis(services, make_job(ids))

    frustration = fetch_all(models.SentimentLevel, models.SentimentLevel.level == "frustration")[0]
    row = fetch_all(models.CommentInsight)[0]
    assert row.sentiment_level_id == frustration.id
    assert row.sentiment_confidence == 8
    assert row.emotional_drivers == ["lost work"]
    assert row.sentiment_reasoning == "Repeated crashes"
    assert result["sentimentsAnalyzed"] == 1

    analyzed = [e for e in recorded_events if client_type(e.type) == "pix:sentiment:analyzed"]
    assert len(analyzed) == 1
    assert analyzed[0].properties.intensity_value == -4


def test_out_of_range_index_is_skipped(services, generator, make_comments, make_insight, make_job, fetch_all):
    make_insight("app crashes")
    ids = make_comments("App crashes on login")
    generator.queue(
        "InsightDetection",
        _insight_response(_detected(0, "app crashes"), _detected(5, "app crashes")),
    )

    run_analysis(services, make_job(ids))

    assert len(fetch_all(models.CommentInsight)) == 1


def test_failure_rolls_back_every_write(services, generator, recorded_events, make_comments, make_insight, make_job, fetch_all):
    make_insight("app crashes")
    ids = make_comments("App crashes on login")
    generator.queue("InsightDetection", _insight_response(_detected(0, "app crashes")))
    generator.queue(
        "IntentionDetection",
        ProviderError({"provider": "openai", "model": "gpt-4o-mini", "status_code": 500, "message": "upstream down"}),
    )

    with pytest.raises(PreparedJobError) as excinfo:
        run_analysis(services, make_job(ids))

    assert fetch_all(models.CommentInsight) == []
    assert fetch_all(models.AgentProcessingLog) == []

    error = excinfo.value
    assert isinstance(error.original_error, AnalysisError)
    assert error.original_error.data.phase == "ai_generation"
    assert error.original_error.data.agent == "gro"

    chain = error.worker_error_result.error_chain
    assert [item["name"] for item in chain] == ["AnalysisError", "AI.ProviderError"]

    types = _types(recorded_events)
    assert types[-2:] == ["state:changed", "job:failed"]
    failed_state = recorded_events[-2].properties
    assert failed_state.state == "failed"
    assert failed_state.progress == 0
    assert failed_state.details["chain"] == [item["message"] for item in chain]
    assert recorded_events[-1].properties.error_type == "AnalysisError"


def test_missing_comments_fail_the_job(services, make_job, recorded_events):
    with pytest.raises(PreparedJobError) as excinfo:
        run_analysis(services, make_job(["does-not-exist"]))

    assert isinstance(excinfo.value.original_error, DataFetchError)
    assert _types(recorded_events)[-1] == "job:failed"


def test_failed_attempt_reports_whether_it_will_retry(services, generator, recorded_events, make_comments, make_job):
    ids = make_comments("App crashes on login")
    generator.queue("InsightDetection", ProviderError({"provider": "openai", "model": "gpt-4o-mini", "status_code": 503}))
    generator.queue("InsightDetection", ProviderError({"provider": "openai", "model": "gpt-4o-mini", "status_code": 503}))

    job = make_job(ids)
    job.options = JobOptions(attempts=2)
    with pytest.raises(PreparedJobError):
        run_analysis(services, job)

    first = recorded_events[-1].properties
    assert first.attempts_made == 1
    assert first.will_retry is True

    job.attempts_made = 1
    with pytest.raises(PreparedJobError):
        run_analysis(services, job)

    last = recorded_events[-1].properties
    assert last.attempts_made == 2
    assert last.will_retry is False


def test_invalid_generated_object_fails_as_result_parsing(services, generator, recorded_events, make_comments, make_insight, make_job, fetch_all):
    make_insight("app crashes")
    ids = make_comments("App crashes on login")
    generator.queue("InsightDetection", _insight_response(_detected(0, "app crashes")))
    generator.queue(
        "IntentionDetection",
        SchemaValidationError(
            {
                "provider": "openai",
                "model": "gpt-4o-mini",
                "generated_object": {"results": "none"},
                "validation_errors": ["results: Input should be a valid list"],
            }
        ),
    )

    with pytest.raises(PreparedJobError) as excinfo:
        run_analysis(services, make_job(ids))

    assert fetch_all(models.CommentInsight) == []
    assert fetch_all(models.AgentProcessingLog) == []

    error = excinfo.value.original_error
    assert isinstance(error, AnalysisError)
    assert error.data.phase == "result_parsing"
    assert error.data.agent == "gro"
    assert isinstance(error.__cause__, SchemaValidationError)

    assert _types(recorded_events)[-1] == "job:failed"
    assert recorded_events[-1].properties.original_error["data"]["phase"] == "result_parsing"


def test_invalid_prompt_variables_fail_as_prompt_generation(services, db, generator, recorded_events, make_comments, make_insight, make_job, fetch_all):
    make_insight("app crashes")
    ids = make_comments("App crashes on login")
    # GRO needs at least one intention type to build its prompt
    db.query(models.Intention).delete()
    db.commit()
    generator.queue("InsightDetection", _insight_response(_detected(0, "app crashes")))

    with pytest.raises(PreparedJobError) as excinfo:
        run_analysis(services, make_job(ids))

    assert fetch_all(models.CommentInsight) == []

    error = excinfo.value.original_error
    assert error.data.phase == "prompt_generation"
    assert error.data.agent == "gro"
    assert isinstance(error.__cause__, PromptValidationError)
    assert generator.schemas_called() == ["InsightDetection"]
