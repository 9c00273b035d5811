"""
Database table definitions for the Comment Insights system.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


INTENTION_TYPES = ("resolve", "complain", "compare", "cancel", "inquire", "praise", "suggest", "other")

SENTIMENT_LEVELS = (
    "doubt",
    "concern",
    "annoyance",
    "frustration",
    "anger",
    "outrage",
    "contempt",
    "fury",
    "neutral",
    "satisfaction",
    "gratitude",
)

SENTIMENT_SEVERITIES = ("none", "low", "medium", "high", "critical", "positive")

AGENT_NAMES = ("leti", "gro", "pix")


def _uuid() -> str:
    return str(uuid.uuid4())


# --------------------------------------------------------
# TABLE 1: Comments
# --------------------------------------------------------
class Comment(Base):
    """
    Raw customer comments. Created by the API, only read by the pipeline.
    """

    __tablename__ = "comments"

    id = Column(String(36), primary_key=True, default=_uuid)
    content = Column(Text, nullable=False)
    source = Column(String(100))  # survey / app_store / support / etc
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    insights = relationship("CommentInsight", back_populates="comment")
    intentions = relationship("CommentIntention", back_populates="comment")


# --------------------------------------------------------
# TABLE 2: Insights
# --------------------------------------------------------
class Insight(Base):
    """
    Named issue/topic categories. Seeded by humans or created by LETI (ai_generated).
    `name` is always lower-cased and is the dedup key.
    """

    __tablename__ = "insights"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False)
    content = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    ai_generated = Column(Boolean, default=False, nullable=False)

    business_unit = Column(String(100))
    operational_area = Column(String(100))
    external_id = Column(String(100))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# --------------------------------------------------------
# TABLE 3: Intentions (fixed taxonomy)
# --------------------------------------------------------
class Intention(Base):
    __tablename__ = "intentions"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(Enum(*INTENTION_TYPES, name="intention_type"), unique=True, nullable=False)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# --------------------------------------------------------
# TABLE 4: Sentiment levels (PIXE scale)
# --------------------------------------------------------
class SentimentLevel(Base):
    __tablename__ = "sentiment_levels"

    id = Column(Integer, primary_key=True, index=True)
    level = Column(Enum(*SENTIMENT_LEVELS, name="sentiment_level"), unique=True, nullable=False)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(Enum(*SENTIMENT_SEVERITIES, name="sentiment_severity"), nullable=False)
    intensity_value = Column(Integer, nullable=False)  # -8 (fury) .. +2 (gratitude)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# --------------------------------------------------------
# TABLE 5: Comment <-> Insight (LETI, then PIX)
# --------------------------------------------------------
class CommentInsight(Base):
    """
    One detected insight in one comment.
    Sentiment columns stay NULL until PIX analyzes the row.
    """

    __tablename__ = "comment_insights"

    id = Column(String(36), primary_key=True, default=_uuid)
    comment_id = Column(String(36), ForeignKey("comments.id"), nullable=False, index=True)
    insight_id = Column(Integer, ForeignKey("insights.id"), nullable=False, index=True)
    confidence = Column(Float, nullable=False)  # 0-10
    detected_by = Column(String(50))  # leti
    reasoning = Column(Text)

    sentiment_level_id = Column(Integer, ForeignKey("sentiment_levels.id"))
    sentiment_confidence = Column(Float)
    emotional_drivers = Column(JSON)
    sentiment_reasoning = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    comment = relationship("Comment", back_populates="insights")
    insight = relationship("Insight")
    sentiment_level = relationship("SentimentLevel")


# --------------------------------------------------------
# TABLE 6: Comment <-> Intention (GRO)
# --------------------------------------------------------
class CommentIntention(Base):
    __tablename__ = "comment_intentions"

    id = Column(String(36), primary_key=True, default=_uuid)
    comment_id = Column(String(36), ForeignKey("comments.id"), nullable=False, index=True)
    intention_id = Column(Integer, ForeignKey("intentions.id"), nullable=False)
    primary_intention = Column(String(50), nullable=False)
    secondary_intentions = Column(JSON, default=list)
    confidence = Column(Float, nullable=False)
    reasoning = Column(Text)
    context_factors = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    comment = relationship("Comment", back_populates="intentions")
    intention = relationship("Intention")


# --------------------------------------------------------
# TABLE 7: Agent processing audit log
# --------------------------------------------------------
class AgentProcessingLog(Base):
    """
    One row per (job, agent, comment). Written for observability only.
    `metadata_json` holds {"agentName": ..., "data": {...}} as text.
    """

    __tablename__ = "agent_processing_logs"
    __table_args__ = (
        UniqueConstraint("job_id", "agent_name", "comment_id", name="uq_agent_log_job_agent_comment"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    job_id = Column(String(100), nullable=False, index=True)
    comment_id = Column(String(36), ForeignKey("comments.id"), nullable=False)
    agent_name = Column(Enum(*AGENT_NAMES, name="agent_name"), nullable=False)
    processing_time_ms = Column(Integer)
    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text)
    metadata_json = Column("metadata", Text)
    created_at = Column(DateTime, default=datetime.utcnow)
