"""
Structured Generation Client

This isolates model configuration from agent logic:
- provider + performance tier pick a concrete model from MODELS
- every call has a hard 60 second timeout
- provider failures are normalized into four named errors

Agents only ever call `generate_text` / `generate_object`.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

import httpx
import openai
from langchain_core.exceptions import OutputParserException
from langchain_core.language_models import BaseChatModel
from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from services.errors import ErrorData, NamedError


logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

TIMEOUT_SECONDS = 60


class Provider(str, Enum):
    OPENAI = "openai"
    GOOGLE = "google"


class Performance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


MODELS: Dict[Provider, Dict[Performance, str]] = {
    Provider.OPENAI: {
        Performance.HIGH: "gpt-4o",
        Performance.MEDIUM: "gpt-4o-mini",
        Performance.LOW: "gpt-4o-mini",
    },
    Provider.GOOGLE: {
        Performance.HIGH: "gemini-2.0-flash-exp",
        Performance.MEDIUM: "gemini-1.5-flash",
        Performance.LOW: "gemini-1.5-flash-8b",
    },
}


# -----------------------------
# Errors
# -----------------------------
class GenerationErrorData(ErrorData):
    provider: str
    model: str


class TimeoutData(GenerationErrorData):
    timeout_ms: int


class ProviderErrorData(GenerationErrorData):
    status_code: Optional[int] = None


class NoObjectData(GenerationErrorData):
    generated_text: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


class SchemaValidationData(GenerationErrorData):
    generated_object: Any = None
    validation_errors: List[Any] = []


class GenerationTimeoutError(NamedError):
    name = "AI.GenerationTimeoutError"
    data_model = TimeoutData


class ProviderError(NamedError):
    name = "AI.ProviderError"
    data_model = ProviderErrorData


class NoObjectGeneratedError(NamedError):
    name = "AI.NoObjectGeneratedError"
    data_model = NoObjectData


class SchemaValidationError(NamedError):
    name = "AI.SchemaValidationError"
    data_model = SchemaValidationData


# -----------------------------
# Helpers
# -----------------------------
def message(role: str, content: str) -> Dict[str, str]:
    if role not in ("system", "user", "assistant"):
        raise ValueError(f"Unsupported message role: {role}")
    return {"role": role, "content": content}


def resolve_model(provider: Provider | str, performance: Performance | str) -> str:
    try:
        return MODELS[Provider(provider)][Performance(performance)]
    except (KeyError, ValueError) as e:
        raise ValueError(f"No model configured for provider={provider!r} performance={performance!r}") from e


def default_model_factory(
    provider: Provider,
    model: str,
    temperature: float,
    max_tokens: Optional[int],
) -> BaseChatModel:
    if provider == Provider.OPENAI:
        from langchain_openai import ChatOpenAI

        # ChatOpenAI reads OPENAI_API_KEY from env automatically
        return ChatOpenAI(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=TIMEOUT_SECONDS,
            max_retries=0,
        )

    from langchain_google_genai import ChatGoogleGenerativeAI

    # Reads GOOGLE_API_KEY from env
    return ChatGoogleGenerativeAI(
        model=model,
        temperature=temperature,
        max_output_tokens=max_tokens,
        timeout=TIMEOUT_SECONDS,
        max_retries=0,
    )


def _is_retryable(error: BaseException) -> bool:
    if not isinstance(error, ProviderError):
        return False
    status = error.data.status_code or 0
    return status == 429 or status >= 500


def _status_code(error: BaseException) -> Optional[int]:
    for candidate in (
        getattr(error, "status_code", None),
        getattr(error, "code", None),
        getattr(getattr(error, "response", None), "status_code", None),
    ):
        if isinstance(candidate, int):
            return candidate
    return None


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


ModelFactory = Callable[[Provider, str, float, Optional[int]], BaseChatModel]


class StructuredGenerator:
    def __init__(self, model_factory: Optional[ModelFactory] = None):
        self._model_factory = model_factory or default_model_factory

    # -----------------------------
    # Public API
    # -----------------------------
    def generate_text(
        self,
        messages: List[Dict[str, str]],
        *,
        system: Optional[str] = None,
        provider: Provider | str = Provider.OPENAI,
        performance: Performance | str = Performance.LOW,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        provider, model = Provider(provider), resolve_model(provider, performance)
        chat = self._model_factory(provider, model, temperature, max_tokens)

        response = self._invoke(chat, self._with_system(messages, system), provider, model)
        return _text_of(response.content)

    def generate_object(
        self,
        messages: List[Dict[str, str]],
        schema: Type[T],
        *,
        system: Optional[str] = None,
        provider: Provider | str = Provider.OPENAI,
        performance: Performance | str = Performance.LOW,
        temperature: float = 0.0,
        max_tokens: Optional[int] = None,
    ) -> T:
        """
        Returns a validated instance of `schema`.

        Raises:
            NoObjectGeneratedError: the model answered without a usable object
            SchemaValidationError: the object did not match `schema`
            GenerationTimeoutError / ProviderError: transport failures
        """
        provider, model = Provider(provider), resolve_model(provider, performance)
        chat = self._model_factory(provider, model, temperature, max_tokens)

        kwargs = {"method": "function_calling"} if provider == Provider.OPENAI else {}
        structured = chat.with_structured_output(schema, include_raw=True, **kwargs)

        result = self._invoke(structured, self._with_system(messages, system), provider, model)
        return self._unwrap(result, schema, provider, model)

    # -----------------------------
    # Internals
    # -----------------------------
    @staticmethod
    def _with_system(messages: List[Dict[str, str]], system: Optional[str]) -> List[Dict[str, str]]:
        if system:
            return [message("system", system), *messages]
        return list(messages)

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=6),
        reraise=True,
    )
    def _invoke(self, runnable: Any, messages: List[Dict[str, str]], provider: Provider, model: str) -> Any:
        start = time.time()
        try:
            result = runnable.invoke(messages)
        except (openai.APITimeoutError, httpx.TimeoutException, TimeoutError) as e:
            raise GenerationTimeoutError(
                {"provider": provider.value, "model": model, "timeout_ms": TIMEOUT_SECONDS * 1000},
                message=f"Generation timed out after {TIMEOUT_SECONDS}s",
            ) from e
        except Exception as e:
            status = _status_code(e)
            if status is None:
                raise
            raise ProviderError(
                {"provider": provider.value, "model": model, "status_code": status, "message": str(e) or "Provider API error"}
            ) from e

        logger.info(
            "LLM call finished",
            extra={"provider": provider.value, "model": model, "duration_ms": int((time.time() - start) * 1000)},
        )
        return result

    @staticmethod
    def _unwrap(result: Dict[str, Any], schema: Type[T], provider: Provider, model: str) -> T:
        raw = result.get("raw")
        parsed = result.get("parsed")
        parsing_error = result.get("parsing_error")

        validation_error = parsing_error
        if parsing_error is not None and not isinstance(parsing_error, ValidationError):
            validation_error = parsing_error.__cause__

        if isinstance(validation_error, ValidationError):
            tool_calls = getattr(raw, "tool_calls", None) or []
            raise SchemaValidationError(
                {
                    "provider": provider.value,
                    "model": model,
                    "generated_object": tool_calls[0].get("args") if tool_calls else _text_of(getattr(raw, "content", None)),
                    "validation_errors": validation_error.errors(include_url=False),
                    "message": f"Generated object does not match {schema.__name__}",
                }
            ) from parsing_error

        if parsed is None or isinstance(parsing_error, OutputParserException):
            metadata = getattr(raw, "response_metadata", None) or {}
            error = NoObjectGeneratedError(
                {
                    "provider": provider.value,
                    "model": model,
                    "generated_text": _text_of(getattr(raw, "content", None)),
                    "finish_reason": metadata.get("finish_reason"),
                    "usage": dict(getattr(raw, "usage_metadata", None) or {}) or None,
                    "message": "No object generated: the model response could not be parsed",
                }
            )
            if parsing_error is not None:
                raise error from parsing_error
            raise error

        if isinstance(parsed, dict):
            return schema.model_validate(parsed)
        return parsed
