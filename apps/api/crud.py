from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from . import models


def dialect_insert(db: Session, table):
    """Dialect-specific INSERT so upserts can use ON CONFLICT."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


# --------------------------------------------------------
# Comments
# --------------------------------------------------------
def create_comments(db: Session, items: List[Dict[str, Optional[str]]]) -> List[models.Comment]:
    comments = [models.Comment(content=item["content"], source=item.get("source")) for item in items]
    db.add_all(comments)
    db.commit()
    for comment in comments:
        db.refresh(comment)
    return comments


def get_comment(db: Session, comment_id: str) -> models.Comment | None:
    return db.query(models.Comment).filter(models.Comment.id == comment_id).first()


def get_comments_by_ids(db: Session, comment_ids: List[str]) -> List[models.Comment]:
    return db.query(models.Comment).filter(models.Comment.id.in_(comment_ids)).all()


def get_comment_insights(db: Session, comment_id: str) -> List[models.CommentInsight]:
    return (
        db.query(models.CommentInsight)
        .filter(models.CommentInsight.comment_id == comment_id)
        .order_by(models.CommentInsight.created_at.asc())
        .all()
    )


def get_comment_intentions(db: Session, comment_id: str) -> List[models.CommentIntention]:
    return (
        db.query(models.CommentIntention)
        .filter(models.CommentIntention.comment_id == comment_id)
        .order_by(models.CommentIntention.created_at.asc())
        .all()
    )


# --------------------------------------------------------
# Reference data
# --------------------------------------------------------
def list_insights(db: Session, ai_generated: Optional[bool] = None) -> List[models.Insight]:
    query = db.query(models.Insight)
    if ai_generated is not None:
        query = query.filter(models.Insight.ai_generated == ai_generated)
    return query.order_by(models.Insight.name.asc()).all()


def list_intentions(db: Session) -> List[models.Intention]:
    return db.query(models.Intention).order_by(models.Intention.id.asc()).all()


def list_sentiment_levels(db: Session) -> List[models.SentimentLevel]:
    return db.query(models.SentimentLevel).order_by(models.SentimentLevel.intensity_value.asc()).all()


# --------------------------------------------------------
# Upserts used inside the analysis transaction (no commit here)
# --------------------------------------------------------
def upsert_insight(db: Session, name: str, description: str) -> Tuple[int, str]:
    """
    Insert an AI-generated insight keyed on its lower-cased name.
    If the name already exists only `updated_at` is touched.
    Returns (id, name) of the surviving row.
    """
    table = models.Insight.__table__
    key = name.strip().lower()

    stmt = dialect_insert(db, table).values(
        name=key,
        content=name.strip() or description,
        description=description,
        ai_generated=True,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["name"],
        set_={"updated_at": datetime.utcnow()},
    ).returning(table.c.id, table.c.name)

    row = db.execute(stmt).one()
    return row.id, row.name


def upsert_agent_log(
    db: Session,
    job_id: str,
    comment_id: str,
    agent_name: str,
    processing_time_ms: int,
    success: bool,
    metadata: Dict[str, Any],
    error_message: str | None = None,
) -> None:
    """Same (job_id, agent_name, comment_id) overwrites the previous row."""
    table = models.AgentProcessingLog.__table__

    stmt = dialect_insert(db, table).values(
        {
            "job_id": job_id,
            "comment_id": comment_id,
            "agent_name": agent_name,
            "processing_time_ms": processing_time_ms,
            "success": success,
            "error_message": error_message,
            "metadata": json.dumps(metadata, default=str),
            "created_at": datetime.utcnow(),
        }
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["job_id", "agent_name", "comment_id"],
        set_={
            "processing_time_ms": stmt.excluded.processing_time_ms,
            "success": stmt.excluded.success,
            "error_message": stmt.excluded.error_message,
            "metadata": stmt.excluded["metadata"],
            "created_at": stmt.excluded.created_at,
        },
    )
    db.execute(stmt)


# --------------------------------------------------------
# Agent logs (read side)
# --------------------------------------------------------
def list_agent_logs(
    db: Session,
    agent_name: str | None = None,
    success: bool | None = None,
    created_after: datetime | None = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[models.AgentProcessingLog], int]:
    query = db.query(models.AgentProcessingLog)
    if agent_name:
        query = query.filter(models.AgentProcessingLog.agent_name == agent_name)
    if success is not None:
        query = query.filter(models.AgentProcessingLog.success == success)
    if created_after is not None:
        query = query.filter(models.AgentProcessingLog.created_at >= created_after)

    total = query.count()
    rows = (
        query.order_by(models.AgentProcessingLog.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total
