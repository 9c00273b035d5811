"""
Per-job context shared by the three agents.

Holds the collaborators (bus, generator, prompt compiler), the job id and
the model selection, plus the one LLM-call policy all agents follow:
- "no object generated" -> empty results, keep going
- schema mismatch -> AnalysisError(phase="result_parsing")
- anything else -> AnalysisError(phase="ai_generation")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel

from agents.comment_analysis.errors import AnalysisError
from services.bus.bus import EventBus, EventDefinition
from services.llm.client import (
    NoObjectGeneratedError,
    Performance,
    Provider,
    SchemaValidationError,
    StructuredGenerator,
    message,
)
from services.llm.prompts import PromptCompiler, PromptValidationError, TemplateName
from services.metrics import agent_no_object_total


logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.3


@dataclass
class AnalysisContext:
    bus: EventBus
    generator: StructuredGenerator
    prompts: PromptCompiler
    job_id: str = "unknown"
    provider: Provider = Provider.OPENAI
    performance: Performance = Performance.LOW
    temperature: float = DEFAULT_TEMPERATURE

    def __post_init__(self) -> None:
        self.provider = Provider(self.provider)
        self.performance = Performance(self.performance)

    def publish(self, definition: EventDefinition, **properties: Any) -> None:
        self.bus.publish(definition, {"job_id": self.job_id, **properties})

    def compile_prompt(self, agent: str, template: TemplateName, variables: dict, comment_count: int) -> str:
        try:
            return self.prompts.compile(template, variables)
        except PromptValidationError as e:
            raise self._analysis_error("prompt_generation", agent, comment_count, e) from e

    def generate_results(
        self,
        agent: str,
        schema: type[BaseModel],
        system: str,
        user_prompt: str,
        comment_count: int,
    ) -> List[Any]:
        try:
            response = self.generator.generate_object(
                [message("user", user_prompt)],
                schema,
                system=system,
                provider=self.provider,
                performance=self.performance,
                temperature=self.temperature,
            )
        except NoObjectGeneratedError as e:
            agent_no_object_total.labels(agent=agent).inc()
            logger.warning(
                "No object generated, continuing with empty results",
                extra={"agent": agent, "job_id": self.job_id, "finish_reason": e.data.finish_reason},
            )
            return []
        except SchemaValidationError as e:
            raise self._analysis_error("result_parsing", agent, comment_count, e) from e
        except Exception as e:
            raise self._analysis_error("ai_generation", agent, comment_count, e) from e

        return list(response.results or [])

    def _analysis_error(self, phase: str, agent: str, comment_count: int, error: Exception) -> AnalysisError:
        logger.error(
            "Agent generation failed",
            extra={"agent": agent, "phase": phase, "job_id": self.job_id, "error": str(error)},
        )
        return AnalysisError(
            {
                "phase": phase,
                "agent": agent,
                "comment_count": comment_count,
                "provider": self.provider.value,
                "original_error": str(error),
                "message": f"{agent.upper()} {phase.replace('_', ' ')} failed",
            }
        )


def item_at(items: Sequence[Any], index: int, agent: str, job_id: str) -> Optional[Any]:
    """Index returned by the model -> item, or None (logged) when out of range."""
    if 0 <= index < len(items):
        return items[index]
    logger.warning(
        "Model returned an out-of-range index, skipping",
        extra={"agent": agent, "job_id": job_id, "index": index, "size": len(items)},
    )
    return None


@dataclass
class BatchData:
    """Rows read once at the start of a job."""

    comments: List[Any]
    insights: List[Any]
    sentiment_levels: List[Any]
