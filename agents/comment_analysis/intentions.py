"""
GRO - Intention Detection Agent

Finds the primary (and any secondary) intention behind each comment,
using the fixed intention taxonomy from the database.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agents.comment_analysis.agent_log import log_agent_processing
from agents.comment_analysis.context import AnalysisContext, item_at
from agents.comment_analysis.errors import IntentionCreationError
from agents.comment_analysis.events import GroCompleted, GroIntentionDetected, GroStarted
from agents.comment_analysis.schemas import IntentionDetection
from apps.api import crud, models
from services.llm.prompts import TemplateName
from services.metrics import agent_latency_ms


logger = logging.getLogger(__name__)

AGENT = "gro"
USER_PROMPT = "Identify the primary intention behind each comment."


@dataclass
class GroResult:
    comment_intention_ids: List[str] = field(default_factory=list)


def detect_intentions(db: Session, comments: List[Any], ctx: AnalysisContext) -> GroResult:
    start = time.time()

    intentions = crud.list_intentions(db)
    intention_by_type = {i.type: i for i in intentions}

    ctx.publish(GroStarted, comment_count=len(comments))

    system = ctx.compile_prompt(
        AGENT,
        TemplateName.INTENTION_DETECTION,
        {"comments": [c.content for c in comments], "intention_types": [i.type for i in intentions]},
        comment_count=len(comments),
    )
    results = ctx.generate_results(AGENT, IntentionDetection, system, USER_PROMPT, len(comments))

    outcome = GroResult()

    for item in results:
        comment = item_at(comments, item.comment_index, AGENT, ctx.job_id)
        if comment is None:
            continue

        comment_start = time.time()
        metadata = {
            "commentId": comment.id,
            "intentionDetected": None,
            "processingTimeMs": 0,
            "provider": ctx.provider.value,
            "performance": ctx.performance.value,
        }

        intention = intention_by_type.get(item.primary_intention)
        if intention is None:
            logger.warning(
                "Primary intention not in taxonomy, skipping",
                extra={"job_id": ctx.job_id, "comment_id": comment.id, "intention": item.primary_intention},
            )
            log_agent_processing(db, ctx.job_id, comment.id, AGENT, comment_start, metadata)
            continue

        row = models.CommentIntention(
            comment_id=comment.id,
            intention_id=intention.id,
            primary_intention=item.primary_intention,
            secondary_intentions=list(item.secondary_intentions),
            confidence=item.confidence,
            reasoning=item.reasoning,
            context_factors=item.context_factors,
        )
        try:
            db.add(row)
            db.flush()
        except SQLAlchemyError as e:
            raise IntentionCreationError(
                {
                    "comment_id": comment.id,
                    "intention_type": item.primary_intention,
                    "message": f"Failed to store intention for comment {comment.id}",
                }
            ) from e

        outcome.comment_intention_ids.append(row.id)
        metadata["intentionDetected"] = {
            "intentionId": intention.id,
            "primaryIntention": item.primary_intention,
            "secondaryIntentions": list(item.secondary_intentions),
            "confidence": item.confidence,
        }
        ctx.publish(
            GroIntentionDetected,
            comment_id=comment.id,
            comment_intention_id=row.id,
            primary_intention=item.primary_intention,
            secondary_intentions=list(item.secondary_intentions),
            confidence=item.confidence,
        )

        metadata["processingTimeMs"] = int((time.time() - comment_start) * 1000)
        log_agent_processing(db, ctx.job_id, comment.id, AGENT, comment_start, metadata)

    ctx.publish(GroCompleted, total_processed=len(results))
    agent_latency_ms.labels(agent=AGENT).observe((time.time() - start) * 1000)
    return outcome
