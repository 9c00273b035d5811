"""
PIX - Sentiment Analysis Agent (PIXE scale)

Rates the customer's emotion per (comment, insight) pair created by LETI
and writes it back onto the comment_insights row.

The pairs are re-read from the database by id; that query, not LETI's
in-memory result, decides what gets analyzed.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agents.comment_analysis.agent_log import log_agent_processing
from agents.comment_analysis.context import AnalysisContext, item_at
from agents.comment_analysis.errors import SentimentUpdateError
from agents.comment_analysis.events import PixCompleted, PixSentimentAnalyzed, PixStarted
from agents.comment_analysis.schemas import build_sentiment_analysis_schema
from apps.api import models
from services.llm.prompts import TemplateName
from services.metrics import agent_latency_ms


logger = logging.getLogger(__name__)

AGENT = "pix"
USER_PROMPT = "Analyze the sentiment for each insight within its comment context."


@dataclass
class PixResult:
    sentiments_analyzed: int = 0


def _load_pairs(db: Session, comment_insight_ids: List[str]) -> List[Any]:
    pairs = (
        db.query(
            models.CommentInsight.id.label("id"),
            models.CommentInsight.comment_id.label("comment_id"),
            models.Insight.id.label("insight_id"),
            models.Insight.name.label("insight_name"),
        )
        .join(models.Insight, models.Insight.id == models.CommentInsight.insight_id)
        .filter(models.CommentInsight.id.in_(comment_insight_ids))
        .all()
    )
    # Keep LETI's creation order so pair indexes are stable
    position = {ci_id: i for i, ci_id in enumerate(comment_insight_ids)}
    return sorted(pairs, key=lambda p: position[p.id])


def analyze_sentiment(
    db: Session,
    comments: List[Any],
    comment_insight_ids: List[str],
    sentiment_levels: List[Any],
    ctx: AnalysisContext,
) -> PixResult:
    if not comment_insight_ids:
        return PixResult(sentiments_analyzed=0)

    start = time.time()
    pairs = _load_pairs(db, comment_insight_ids)
    if not pairs:
        return PixResult(sentiments_analyzed=0)

    ctx.publish(PixStarted, pairs_to_analyze=len(pairs))

    comment_by_id = {c.id: c for c in comments}
    level_by_name = {s.level: s for s in sentiment_levels}

    system = ctx.compile_prompt(
        AGENT,
        TemplateName.SENTIMENT_ANALYSIS,
        {
            "comment_insight_pairs": [
                {
                    "pair_index": i,
                    "comment": comment_by_id[p.comment_id].content if p.comment_id in comment_by_id else "",
                    "insight_name": p.insight_name,
                }
                for i, p in enumerate(pairs)
            ],
            "sentiment_levels": [
                {
                    "level": s.level,
                    "name": s.name,
                    "description": s.description,
                    "severity": s.severity,
                    "intensity_value": s.intensity_value,
                }
                for s in sentiment_levels
            ],
        },
        comment_count=len(comments),
    )
    schema = build_sentiment_analysis_schema([s.level for s in sentiment_levels])
    results = ctx.generate_results(AGENT, schema, system, USER_PROMPT, len(comments))

    analyzed = 0
    by_comment: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    for item in results:
        pair = item_at(pairs, item.pair_index, AGENT, ctx.job_id)
        if pair is None:
            continue

        level = level_by_name.get(item.sentiment_level)
        if level is None:
            logger.warning(
                "Sentiment level not in scale, skipping",
                extra={"job_id": ctx.job_id, "comment_insight_id": pair.id, "sentiment_level": item.sentiment_level},
            )
            continue

        try:
            db.query(models.CommentInsight).filter(models.CommentInsight.id == pair.id).update(
                {
                    models.CommentInsight.sentiment_level_id: level.id,
                    models.CommentInsight.sentiment_confidence: item.confidence,
                    models.CommentInsight.emotional_drivers: list(item.emotional_drivers),
                    models.CommentInsight.sentiment_reasoning: item.reasoning,
                },
                synchronize_session=False,
            )
        except SQLAlchemyError as e:
            raise SentimentUpdateError(
                {
                    "comment_insight_id": pair.id,
                    "sentiment_level": item.sentiment_level,
                    "message": f"Failed to store sentiment for comment insight {pair.id}",
                }
            ) from e

        analyzed += 1
        by_comment[pair.comment_id].append(
            {
                "insightId": pair.insight_id,
                "insightName": pair.insight_name,
                "sentimentLevelId": level.id,
                "sentimentLevel": level.level,
                "confidence": item.confidence,
                "emotionalDrivers": list(item.emotional_drivers),
            }
        )
        ctx.publish(
            PixSentimentAnalyzed,
            comment_id=pair.comment_id,
            comment_insight_id=pair.id,
            insight_name=pair.insight_name,
            sentiment_level=level.level,
            confidence=item.confidence,
            emotional_drivers=list(item.emotional_drivers),
            reasoning=item.reasoning,
            intensity_value=level.intensity_value,
        )

    elapsed_ms = int((time.time() - start) * 1000)
    for comment_id, sentiments in by_comment.items():
        log_agent_processing(
            db,
            ctx.job_id,
            comment_id,
            AGENT,
            start,
            {
                "commentId": comment_id,
                "sentimentsAnalyzed": sentiments,
                "processingTimeMs": elapsed_ms,
                "provider": ctx.provider.value,
                "performance": ctx.performance.value,
            },
        )

    ctx.publish(PixCompleted, total_analyzed=analyzed)
    agent_latency_ms.labels(agent=AGENT).observe((time.time() - start) * 1000)
    return PixResult(sentiments_analyzed=analyzed)
