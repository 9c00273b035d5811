"""
Prompt Compiler

Renders the analysis system prompts from Jinja2 templates stored next to
this module (services/llm/templates/<name>.j2).

Variables are validated against a per-template pydantic model before
rendering. Compiled templates are cached by name, so each file is read and
parsed once per compiler instance.
"""

from __future__ import annotations

import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from services.errors import ErrorData, NamedError


TEMPLATES_DIR = Path(__file__).parent / "templates"


class TemplateName(str, Enum):
    INSIGHT_DETECTION = "insight-detection"
    INTENTION_DETECTION = "intention-detection"
    SENTIMENT_ANALYSIS = "sentiment-analysis"


# -----------------------------
# Variable schemas
# -----------------------------
class InsightDetectionVariables(BaseModel):
    model_config = ConfigDict(extra="forbid")

    insights: List[str] = Field(..., description="Names of existing insights")
    comments: List[str] = Field(..., min_length=1, description="Comments to analyze")


class IntentionDetectionVariables(BaseModel):
    model_config = ConfigDict(extra="forbid")

    comments: List[str] = Field(..., min_length=1)
    intention_types: List[str] = Field(..., min_length=1)


class CommentInsightPair(BaseModel):
    pair_index: int = Field(..., ge=0)
    comment: str
    insight_name: str


class SentimentLevelInfo(BaseModel):
    level: str
    name: str
    description: str
    severity: str
    intensity_value: int


class SentimentAnalysisVariables(BaseModel):
    model_config = ConfigDict(extra="forbid")

    comment_insight_pairs: List[CommentInsightPair] = Field(..., min_length=1)
    sentiment_levels: List[SentimentLevelInfo] = Field(..., min_length=1)


VARIABLE_SCHEMAS: Dict[TemplateName, type[BaseModel]] = {
    TemplateName.INSIGHT_DETECTION: InsightDetectionVariables,
    TemplateName.INTENTION_DETECTION: IntentionDetectionVariables,
    TemplateName.SENTIMENT_ANALYSIS: SentimentAnalysisVariables,
}


class PromptValidationData(ErrorData):
    template_name: str
    variables: Any = None


class PromptValidationError(NamedError):
    name = "PromptValidationError"
    data_model = PromptValidationData


class PromptCompiler:
    def __init__(self, templates_dir: Path = TEMPLATES_DIR):
        self._env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._cache: Dict[TemplateName, Template] = {}
        self._lock = threading.Lock()

    def compile(
        self,
        template_name: Union[TemplateName, str],
        variables: Union[BaseModel, Mapping[str, Any]],
    ) -> str:
        """Validate `variables` for the named template and render it."""
        template_name = TemplateName(template_name)
        schema = VARIABLE_SCHEMAS[template_name]

        try:
            validated = variables if isinstance(variables, schema) else schema.model_validate(variables)
        except ValidationError as e:
            raise PromptValidationError(
                {
                    "template_name": template_name.value,
                    "variables": variables,
                    "message": f"Invalid variables for prompt template '{template_name.value}'",
                }
            ) from e

        return self._template(template_name).render(**validated.model_dump())

    def cached_templates(self) -> List[str]:
        return [name.value for name in self._cache]

    def _template(self, template_name: TemplateName) -> Template:
        template = self._cache.get(template_name)
        if template is None:
            with self._lock:
                template = self._cache.get(template_name)
                if template is None:
                    template = self._env.get_template(f"{template_name.value}.j2")
                    self._cache[template_name] = template
        return template
