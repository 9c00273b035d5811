"""
Pydantic schemas for the comment analysis pipeline.

Two kinds of models live here:
- what we EXPECT from the LLM for each agent (LETI / GRO / PIX)
- the job payload and the result the worker returns

The LLM sees camelCase keys (alias generator); Python code uses snake_case.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


IntentionType = Literal[
    "resolve",
    "complain",
    "compare",
    "cancel",
    "inquire",
    "praise",
    "suggest",
    "other",
]


# -----------------------------
# LETI - insight detection
# -----------------------------
class DetectedInsight(CamelModel):
    insight_name: str = Field(..., description="Name of detected insight")
    confidence: float = Field(..., ge=0, le=10, description="Detection confidence (0-10)")
    is_emergent: bool = Field(False, description="True if this is a new/emergent insight")
    reasoning: str = Field("", description="Why this insight was detected")


class SuggestedInsight(CamelModel):
    name: str = Field(..., min_length=1, description="Short lower-case name of the new insight")
    description: str = Field(..., description="One line describing the insight")


class CommentInsightResult(CamelModel):
    comment_index: int = Field(..., ge=0, description="0-based index of the comment")
    detected_insights: List[DetectedInsight] = Field(
        default_factory=list,
        description="All insights detected in this comment",
    )
    suggested_new_insights: List[SuggestedInsight] = Field(
        default_factory=list,
        description="New insights that should be created",
    )


class InsightDetection(CamelModel):
    """Output of the LETI agent."""

    results: List[CommentInsightResult] = Field(default_factory=list)


# -----------------------------
# GRO - intention detection
# -----------------------------
class CommentIntentionResult(CamelModel):
    comment_index: int = Field(..., ge=0, description="0-based index of the comment")
    primary_intention: IntentionType = Field(..., description="Main intention detected")
    secondary_intentions: List[IntentionType] = Field(
        default_factory=list,
        description="Additional intentions present",
    )
    confidence: float = Field(..., ge=0, le=10, description="Confidence in detection (0-10)")
    reasoning: str = Field("", description="Why this intention was identified")
    context_factors: str = Field("", description="What factors drove this intention")


class IntentionDetection(CamelModel):
    """Output of the GRO agent."""

    results: List[CommentIntentionResult] = Field(default_factory=list)


# -----------------------------
# PIX - sentiment analysis
# -----------------------------
@lru_cache(maxsize=32)
def _sentiment_schema(levels: tuple) -> type[BaseModel]:
    level_type = Literal[levels]

    result_model = create_model(
        "PairSentimentResult",
        __base__=CamelModel,
        pair_index=(int, Field(..., ge=0, description="Index of the comment/insight pair")),
        insight_name=(str, Field(..., description="Name of the insight being analyzed")),
        sentiment_level=(level_type, Field(..., description="Detected sentiment level from PIXE scale")),
        confidence=(float, Field(..., ge=0, le=10, description="Confidence in sentiment detection (0-10)")),
        emotional_drivers=(List[str], Field(default_factory=list, description="Key emotional factors detected")),
        reasoning=(str, Field("", description="Why this sentiment level was detected")),
    )

    return create_model(
        "SentimentAnalysis",
        __base__=CamelModel,
        __doc__="Output of the PIX agent.",
        results=(List[result_model], Field(default_factory=list)),
    )


def build_sentiment_analysis_schema(levels: Sequence[str]) -> type[BaseModel]:
    """
    The allowed `sentimentLevel` values come from the sentiment_levels table,
    so the schema is built at runtime (and cached per level set).
    """
    if not levels:
        raise ValueError("At least one sentiment level is required")
    return _sentiment_schema(tuple(levels))


# -----------------------------
# Job payload / result
# -----------------------------
class JobMetadata(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    batch_index: Optional[int] = None
    total_batches: Optional[int] = None
    total_comments: Optional[int] = None
    source: Optional[str] = None
    priority: Optional[int] = None


class JobData(CamelModel):
    comment_ids: List[str] = Field(..., min_length=1)
    metadata: JobMetadata = Field(default_factory=JobMetadata)


class ProcessingResult(CamelModel):
    processed_comments: int
    matched_insights: int
    created_insights: int
    detected_insights: int
    new_insights_created: int
    intentions_detected: int
    sentiments_analyzed: int
    comment_insight_ids: List[str] = Field(default_factory=list)
    comment_intention_ids: List[str] = Field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "processedComments": self.processed_comments,
            "matchedInsights": self.matched_insights,
            "createdInsights": self.created_insights,
        }
