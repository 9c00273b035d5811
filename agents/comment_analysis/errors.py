from __future__ import annotations

from typing import List, Literal, Optional

from services.errors import ErrorData, NamedError


AgentName = Literal["leti", "gro", "pix"]
AnalysisPhase = Literal["prompt_generation", "ai_generation", "result_parsing"]


class DataFetchData(ErrorData):
    comment_ids: List[str]


class AnalysisErrorData(ErrorData):
    phase: AnalysisPhase
    agent: AgentName
    comment_count: int
    provider: str
    original_error: Optional[str] = None


class InsightCreationData(ErrorData):
    insight_name: str
    comment_id: Optional[str] = None


class IntentionCreationData(ErrorData):
    comment_id: str
    intention_type: str


class SentimentUpdateData(ErrorData):
    comment_insight_id: str
    sentiment_level: str


class DataFetchError(NamedError):
    name = "DataFetchError"
    data_model = DataFetchData


class AnalysisError(NamedError):
    name = "AnalysisError"
    data_model = AnalysisErrorData


class InsightCreationError(NamedError):
    name = "InsightCreationError"
    data_model = InsightCreationData


class IntentionCreationError(NamedError):
    name = "IntentionCreationError"
    data_model = IntentionCreationData


class SentimentUpdateError(NamedError):
    name = "SentimentUpdateError"
    data_model = SentimentUpdateData
