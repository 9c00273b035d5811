"""
LETI - Insight Detection Agent

For one batch of comments:
1) Ask the model which existing insights appear in each comment,
   and which new ones it would suggest
2) Upsert suggested insights (keyed by lower-cased name)
3) Link each comment to its detected insights (comment_insights rows)
4) Log one audit row per comment

The created comment_insights ids are what PIX analyzes next.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agents.comment_analysis.agent_log import log_agent_processing
from agents.comment_analysis.context import AnalysisContext, BatchData, item_at
from agents.comment_analysis.errors import InsightCreationError
from agents.comment_analysis.events import (
    LetiCompleted,
    LetiInsightCreated,
    LetiInsightDetected,
    LetiStarted,
)
from agents.comment_analysis.schemas import InsightDetection
from apps.api import crud, models
from services.llm.prompts import TemplateName
from services.metrics import agent_latency_ms


logger = logging.getLogger(__name__)

AGENT = "leti"
USER_PROMPT = "Detect all insights present in each comment."


@dataclass
class LetiResult:
    comment_insight_ids: List[str] = field(default_factory=list)
    total_detected: int = 0
    new_insights_created: int = 0
    relationships: List[Dict] = field(default_factory=list)  # [{commentId, insightId, isNew}]


def _find_insight_id(db: Session, name: str) -> Optional[int]:
    row = db.query(models.Insight.id).filter(models.Insight.name == name).first()
    return row.id if row else None


def detect_insights(db: Session, data: BatchData, ctx: AnalysisContext) -> LetiResult:
    start = time.time()
    comments, insights = data.comments, data.insights

    ctx.publish(LetiStarted, comment_count=len(comments), existing_insight_count=len(insights))

    system = ctx.compile_prompt(
        AGENT,
        TemplateName.INSIGHT_DETECTION,
        {"insights": [i.name for i in insights], "comments": [c.content for c in comments]},
        comment_count=len(comments),
    )
    results = ctx.generate_results(AGENT, InsightDetection, system, USER_PROMPT, len(comments))

    existing_by_name = {i.name.lower(): i.id for i in insights}
    outcome = LetiResult()

    for item in results:
        comment = item_at(comments, item.comment_index, AGENT, ctx.job_id)
        if comment is None:
            continue

        comment_start = time.time()
        metadata = {
            "commentId": comment.id,
            "insightsDetected": [],
            "newInsightsCreated": [],
            "processingTimeMs": 0,
            "provider": ctx.provider.value,
            "performance": ctx.performance.value,
        }

        # -----------------------------
        # 1) New insights first
        # -----------------------------
        for suggestion in item.suggested_new_insights:
            try:
                insight_id, insight_name = crud.upsert_insight(db, suggestion.name, suggestion.description)
            except SQLAlchemyError as e:
                raise InsightCreationError(
                    {
                        "insight_name": suggestion.name,
                        "comment_id": comment.id,
                        "message": f"Failed to upsert insight '{suggestion.name}'",
                    }
                ) from e

            outcome.new_insights_created += 1
            metadata["newInsightsCreated"].append({"insightId": insight_id, "insightName": insight_name})
            ctx.publish(
                LetiInsightCreated,
                insight_id=insight_id,
                insight_name=insight_name,
                description=suggestion.description,
            )

        # -----------------------------
        # 2) Comment <-> insight links
        # -----------------------------
        for detected in item.detected_insights:
            name = detected.insight_name.strip().lower()
            if detected.is_emergent:
                insight_id = _find_insight_id(db, name)
            else:
                insight_id = existing_by_name.get(name)

            if insight_id is None:
                logger.info(
                    "Detected insight does not resolve to a row, skipping",
                    extra={"job_id": ctx.job_id, "insight_name": detected.insight_name, "is_emergent": detected.is_emergent},
                )
                continue

            row = models.CommentInsight(
                comment_id=comment.id,
                insight_id=insight_id,
                confidence=detected.confidence,
                detected_by=AGENT,
                reasoning=detected.reasoning or None,
            )
            try:
                db.add(row)
                db.flush()
            except SQLAlchemyError as e:
                raise InsightCreationError(
                    {
                        "insight_name": detected.insight_name,
                        "comment_id": comment.id,
                        "message": f"Failed to link comment {comment.id} to insight '{detected.insight_name}'",
                    }
                ) from e

            outcome.comment_insight_ids.append(row.id)
            outcome.total_detected += 1
            outcome.relationships.append(
                {"commentId": comment.id, "insightId": insight_id, "isNew": detected.is_emergent}
            )
            metadata["insightsDetected"].append(
                {
                    "insightId": insight_id,
                    "insightName": detected.insight_name,
                    "confidence": detected.confidence,
                    "isNew": detected.is_emergent,
                }
            )
            ctx.publish(
                LetiInsightDetected,
                comment_id=comment.id,
                insight_id=insight_id,
                insight_name=detected.insight_name,
                confidence=detected.confidence,
                is_emergent=detected.is_emergent,
                comment_insight_id=row.id,
            )

        metadata["processingTimeMs"] = int((time.time() - comment_start) * 1000)
        log_agent_processing(db, ctx.job_id, comment.id, AGENT, comment_start, metadata)

    ctx.publish(
        LetiCompleted,
        total_detected=outcome.total_detected,
        new_insights_created=outcome.new_insights_created,
    )
    agent_latency_ms.labels(agent=AGENT).observe((time.time() - start) * 1000)
    return outcome
