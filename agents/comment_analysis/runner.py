"""
Analyze-Comments Runner

This module orchestrates one queued job:

1) Fetch comments, insights and sentiment levels
2) LETI  - detect insights          (progress 20)
3) GRO   - detect intentions        (progress 50)
4) PIX   - analyze sentiment        (progress 75)
5) Commit and report                (progress 100)

Steps 1-4 run inside ONE database transaction. If anything raises, every
write of the job is rolled back, a failure is published, and the error is
re-raised (with its serialized chain attached) for the queue to retry.

Progress events already published are never retracted.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agents.comment_analysis.context import AnalysisContext, BatchData
from agents.comment_analysis.errors import DataFetchError
from agents.comment_analysis.events import JobCompleted, JobFailed, JobStarted, StateChanged
from agents.comment_analysis.insights import detect_insights
from agents.comment_analysis.intentions import detect_intentions
from agents.comment_analysis.schemas import JobData, ProcessingResult
from agents.comment_analysis.sentiment import analyze_sentiment
from apps.api import crud
from apps.api.database import transaction
from services.container import ServiceContainer
from services.metrics import (
    analysis_job_latency_ms,
    analysis_jobs_completed_total,
    analysis_jobs_failed_total,
)
from services.queue.errors import error_name, prepare_error_for_throw, process_worker_error
from services.queue.queue import Job, QueueName, Worker


logger = logging.getLogger(__name__)

ERROR_SOURCE = "analyze-comments"


def fetch_data(db: Session, comment_ids: List[str]) -> BatchData:
    try:
        comments = crud.get_comments_by_ids(db, comment_ids)
        insights = crud.list_insights(db)
        sentiment_levels = crud.list_sentiment_levels(db)
    except SQLAlchemyError as e:
        raise DataFetchError(
            {"comment_ids": comment_ids, "message": "Failed to fetch comments, insights or sentiment levels"}
        ) from e

    if not comments:
        raise DataFetchError({"comment_ids": comment_ids, "message": "None of the requested comments exist"})

    if len(comments) < len(set(comment_ids)):
        found = {c.id for c in comments}
        logger.warning(
            "Some comments were not found",
            extra={"missing": [cid for cid in comment_ids if cid not in found]},
        )

    # Same order as requested, so comment indexes in prompts are predictable
    position = {cid: i for i, cid in enumerate(comment_ids)}
    comments.sort(key=lambda c: position.get(c.id, len(position)))

    return BatchData(comments=comments, insights=insights, sentiment_levels=sentiment_levels)


def _state(ctx: AnalysisContext, state: str, progress: int, comment_ids: List[str], **extra: Any) -> None:
    ctx.publish(StateChanged, state=state, progress=progress, comment_ids=comment_ids, **extra)


def run_analysis(services: ServiceContainer, job: Job) -> Dict[str, Any]:
    """
    Processor for the analyze-comments-batch queue.

    Returns the ProcessingResult as a camelCase dict (stored on the job record).
    Raises PreparedJobError on failure.
    """
    start = time.time()
    job_data = JobData.model_validate(job.data)
    comment_ids = job_data.comment_ids
    settings = services.settings

    ctx = AnalysisContext(
        bus=services.bus,
        generator=services.generator,
        prompts=services.prompts,
        job_id=job.id,
        provider=settings.analysis_provider,
        performance=settings.analysis_performance,
    )

    ctx.publish(JobStarted, comment_ids=comment_ids)
    _state(ctx, "initializing", 0, comment_ids, message="Job started")

    try:
        with transaction(services.session_factory) as db:
            _state(ctx, "fetching_data", 10, comment_ids, message="Fetching comments and reference data")
            data = fetch_data(db, comment_ids)
            total = len(data.comments)

            # -----------------------------
            # LETI
            # -----------------------------
            _state(ctx, "analyzing", 20, comment_ids, current_agent="leti", current_comment_index=0, total_comments=total)
            leti = detect_insights(db, data, ctx)

            # -----------------------------
            # GRO
            # -----------------------------
            _state(ctx, "analyzing", 50, comment_ids, current_agent="gro", current_comment_index=0, total_comments=total)
            gro = detect_intentions(db, data.comments, ctx)

            # -----------------------------
            # PIX
            # -----------------------------
            _state(ctx, "analyzing", 75, comment_ids, current_agent="pix", current_comment_index=0, total_comments=total)
            pix = analyze_sentiment(db, data.comments, leti.comment_insight_ids, data.sentiment_levels, ctx)

            result = ProcessingResult(
                processed_comments=total,
                matched_insights=leti.total_detected - leti.new_insights_created,
                created_insights=leti.new_insights_created,
                detected_insights=leti.total_detected,
                new_insights_created=leti.new_insights_created,
                intentions_detected=len(gro.comment_intention_ids),
                sentiments_analyzed=pix.sentiments_analyzed,
                comment_insight_ids=leti.comment_insight_ids,
                comment_intention_ids=gro.comment_intention_ids,
            )
    except Exception as e:
        duration_ms = int((time.time() - start) * 1000)
        analysis_jobs_failed_total.inc()

        worker_error = process_worker_error(
            e,
            context={
                "jobId": job.id,
                "commentIds": comment_ids,
                "metadata": job_data.metadata.model_dump(by_alias=True, exclude_none=True),
                "attemptsMade": job.attempts_made,
                "duration": duration_ms,
            },
            source=ERROR_SOURCE,
        )
        top = worker_error.error_chain[0]

        _state(
            ctx,
            "failed",
            0,
            comment_ids,
            message=worker_error.summary,
            details={
                "error": {"name": top["name"], "message": top["message"], "stack": top["stack"]},
                "chain": [item["message"] for item in worker_error.error_chain],
                "summary": worker_error.summary,
            },
        )
        ctx.publish(
            JobFailed,
            error=worker_error.summary,
            error_type=error_name(e),
            error_context=worker_error.to_dict(),
            original_error={"name": top["name"], "message": top["message"], "data": top["data"]},
            attempts_made=job.attempts_made + 1,
            will_retry=job.attempts_made + 1 < job.options.attempts,
        )
        raise prepare_error_for_throw(worker_error, e) from e

    duration_ms = int((time.time() - start) * 1000)
    analysis_jobs_completed_total.inc()
    analysis_job_latency_ms.observe(duration_ms)

    _state(
        ctx,
        "completed",
        100,
        comment_ids,
        message="Analysis completed",
        details={**result.summary(), "relationships": leti.relationships},
    )
    ctx.publish(JobCompleted, result=result.summary(), duration=duration_ms)

    logger.info(
        "Comment batch analyzed",
        extra={"job_id": job.id, "duration_ms": duration_ms, **result.summary()},
    )
    return result.model_dump(by_alias=True)


def create_worker(services: ServiceContainer, **options) -> Worker:
    return services.queues.create_worker(
        QueueName.ANALYZE_COMMENTS_BATCH.value,
        lambda job: run_analysis(services, job),
        concurrency=services.settings.worker_concurrency,
        remove_on_complete=1000,
        remove_on_fail=1000,
        **options,
    )
