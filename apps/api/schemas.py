from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)
    source: Optional[str] = Field(default=None, max_length=100)


class CommentsCreate(BaseModel):
    comments: List[CommentCreate] = Field(..., min_length=1)


class CommentOut(BaseModel):
    id: str
    content: str
    source: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CommentInsightOut(BaseModel):
    id: str
    insight_id: int
    confidence: float
    detected_by: Optional[str] = None
    sentiment_level_id: Optional[int] = None
    sentiment_confidence: Optional[float] = None
    emotional_drivers: Optional[List[str]] = None
    sentiment_reasoning: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CommentIntentionOut(BaseModel):
    id: str
    intention_id: int
    primary_intention: str
    secondary_intentions: List[str] = []
    confidence: float
    reasoning: Optional[str] = None
    context_factors: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CommentDetailOut(BaseModel):
    comment: CommentOut
    insights: List[CommentInsightOut]
    intentions: List[CommentIntentionOut]


class InsightOut(BaseModel):
    id: int
    name: str
    content: str
    description: str
    ai_generated: bool
    business_unit: Optional[str] = None
    operational_area: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AnalyzeCommentsRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    comment_ids: List[str] = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AnalyzeCommentsResponse(BaseModel):
    success: bool
    message: str
    details: Dict[str, Any]


class AgentLogOut(BaseModel):
    id: str
    job_id: str
    comment_id: str
    agent_name: str
    processing_time_ms: Optional[int] = None
    success: bool
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool = Field(..., serialization_alias="hasMore")


class AgentLogsPage(BaseModel):
    logs: List[AgentLogOut]
    pagination: Pagination
