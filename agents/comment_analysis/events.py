"""
Events published while a comment batch is analyzed.

Bus type = "<queue name>.<client type>", e.g. "analyze-comments-batch.leti:started".
WebSocket clients receive the part after the queue prefix.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from agents.comment_analysis.schemas import CamelModel
from services.bus.bus import event
from services.queue.queue import QueueName


EVENT_PREFIX = f"{QueueName.ANALYZE_COMMENTS_BATCH.value}."

JobState = Literal[
    "initializing",
    "fetching_data",
    "analyzing",
    "creating_insights",
    "creating_relationships",
    "completed",
    "failed",
]


def client_type(bus_type: str) -> str:
    return bus_type[len(EVENT_PREFIX):] if bus_type.startswith(EVENT_PREFIX) else bus_type


class EventPayload(CamelModel):
    job_id: str
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


# -----------------------------
# Job lifecycle
# -----------------------------
class JobStartedPayload(EventPayload):
    comment_ids: List[str]


class JobCompletedPayload(EventPayload):
    result: Dict[str, int]
    duration: int  # ms


class JobFailedPayload(EventPayload):
    error: str
    error_type: str
    error_context: Dict[str, Any]
    original_error: Optional[Dict[str, Any]] = None
    attempts_made: int = 1
    will_retry: bool = False


class StateChangedPayload(EventPayload):
    state: JobState
    progress: int = Field(..., ge=0, le=100)
    comment_ids: List[str]
    message: Optional[str] = None
    current_agent: Optional[Literal["leti", "gro", "pix"]] = None
    current_comment_index: Optional[int] = None
    total_comments: Optional[int] = None
    details: Optional[Dict[str, Any]] = None


# -----------------------------
# LETI
# -----------------------------
class LetiStartedPayload(EventPayload):
    comment_count: int
    existing_insight_count: int


class LetiInsightDetectedPayload(EventPayload):
    comment_id: str
    insight_id: int
    insight_name: str
    confidence: float
    is_emergent: bool
    comment_insight_id: str


class LetiInsightCreatedPayload(EventPayload):
    insight_id: int
    insight_name: str
    description: str


class LetiCompletedPayload(EventPayload):
    total_detected: int
    new_insights_created: int


# -----------------------------
# GRO
# -----------------------------
class GroStartedPayload(EventPayload):
    comment_count: int


class GroIntentionDetectedPayload(EventPayload):
    comment_id: str
    comment_intention_id: str
    primary_intention: str
    secondary_intentions: List[str]
    confidence: float


class GroCompletedPayload(EventPayload):
    total_processed: int


# -----------------------------
# PIX
# -----------------------------
class PixStartedPayload(EventPayload):
    pairs_to_analyze: int


class PixSentimentAnalyzedPayload(EventPayload):
    comment_id: str
    comment_insight_id: str
    insight_name: str
    sentiment_level: str
    confidence: float
    emotional_drivers: List[str]
    reasoning: str
    intensity_value: int


class PixCompletedPayload(EventPayload):
    total_analyzed: int


JobStarted = event(EVENT_PREFIX + "job:started", JobStartedPayload)
JobCompleted = event(EVENT_PREFIX + "job:completed", JobCompletedPayload)
JobFailed = event(EVENT_PREFIX + "job:failed", JobFailedPayload)
StateChanged = event(EVENT_PREFIX + "state:changed", StateChangedPayload)

LetiStarted = event(EVENT_PREFIX + "leti:started", LetiStartedPayload)
LetiInsightDetected = event(EVENT_PREFIX + "leti:insight:detected", LetiInsightDetectedPayload)
LetiInsightCreated = event(EVENT_PREFIX + "leti:insight:created", LetiInsightCreatedPayload)
LetiCompleted = event(EVENT_PREFIX + "leti:completed", LetiCompletedPayload)

GroStarted = event(EVENT_PREFIX + "gro:started", GroStartedPayload)
GroIntentionDetected = event(EVENT_PREFIX + "gro:intention:detected", GroIntentionDetectedPayload)
GroCompleted = event(EVENT_PREFIX + "gro:completed", GroCompletedPayload)

PixStarted = event(EVENT_PREFIX + "pix:started", PixStartedPayload)
PixSentimentAnalyzed = event(EVENT_PREFIX + "pix:sentiment:analyzed", PixSentimentAnalyzedPayload)
PixCompleted = event(EVENT_PREFIX + "pix:completed", PixCompletedPayload)

PIPELINE_EVENTS = [
    JobStarted,
    JobCompleted,
    JobFailed,
    StateChanged,
    LetiStarted,
    LetiInsightDetected,
    LetiInsightCreated,
    LetiCompleted,
    GroStarted,
    GroIntentionDetected,
    GroCompleted,
    PixStarted,
    PixSentimentAnalyzed,
    PixCompleted,
]
