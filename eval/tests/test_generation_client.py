from typing import List
from unittest.mock import MagicMock

import httpx
import openai
import pytest
from langchain_core.messages import AIMessage
from pydantic import BaseModel, ValidationError

from services.llm.client import (
    GenerationTimeoutError,
    NoObjectGeneratedError,
    Performance,
    Provider,
    ProviderError,
    SchemaValidationError,
    StructuredGenerator,
    default_model_factory,
    message,
    resolve_model,
)


class Answer(BaseModel):
    results: List[int]


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


@pytest.fixture(autouse=True)
def no_retry_sleep(monkeypatch):
    monkeypatch.setattr(StructuredGenerator._invoke.retry, "sleep", lambda seconds: None)


def _generator(structured_result=None, side_effect=None):
    chat = MagicMock()
    structured = chat.with_structured_output.return_value
    if side_effect is not None:
        structured.invoke.side_effect = side_effect
    else:
        structured.invoke.return_value = structured_result
    factory = MagicMock(return_value=chat)
    return StructuredGenerator(model_factory=factory), factory, chat


def test_resolve_model():
    assert resolve_model("openai", "high") == "gpt-4o"
    assert resolve_model(Provider.GOOGLE, Performance.LOW) == "gemini-1.5-flash-8b"
    with pytest.raises(ValueError):
        resolve_model("anthropic", "low")
    with pytest.raises(ValueError):
        resolve_model("openai", "extreme")


def test_message_rejects_unknown_role():
    assert message("user", "hi") == {"role": "user", "content": "hi"}
    with pytest.raises(ValueError):
        message("tool", "hi")


def test_generate_object_returns_parsed():
    generator, factory, chat = _generator({"raw": AIMessage(content=""), "parsed": Answer(results=[1, 2]), "parsing_error": None})

    answer = generator.generate_object(
        [message("user", "count")], Answer, system="You count.", provider="openai", performance="medium"
    )

    assert answer == Answer(results=[1, 2])
    factory.assert_called_once_with(Provider.OPENAI, "gpt-4o-mini", 0.0, None)
    chat.with_structured_output.assert_called_once_with(Answer, include_raw=True, method="function_calling")

    sent = chat.with_structured_output.return_value.invoke.call_args.args[0]
    assert sent[0] == {"role": "system", "content": "You count."}
    assert sent[1] == {"role": "user", "content": "count"}


def test_google_uses_default_structured_output():
    generator, _, chat = _generator({"raw": AIMessage(content=""), "parsed": {"results": [3]}, "parsing_error": None})

    answer = generator.generate_object([message("user", "x")], Answer, provider="google")

    assert answer.results == [3]
    chat.with_structured_output.assert_called_once_with(Answer, include_raw=True)


def test_missing_object_raises_no_object_generated():
    raw = AIMessage(content="I cannot help with that", response_metadata={"finish_reason": "stop"})
    generator, _, _ = _generator({"raw": raw, "parsed": None, "parsing_error": None})

    with pytest.raises(NoObjectGeneratedError) as excinfo:
        generator.generate_object([message("user", "x")], Answer)

    assert excinfo.value.data.generated_text == "I cannot help with that"
    assert excinfo.value.data.finish_reason == "stop"


def test_mismatched_object_raises_schema_validation():
    try:
        Answer.model_validate({"results": "many"})
    except ValidationError as e:
        parsing_error = e

    raw = AIMessage(content="", tool_calls=[{"name": "Answer", "args": {"results": "many"}, "id": "call_1"}])
    generator, _, _ = _generator({"raw": raw, "parsed": None, "parsing_error": parsing_error})

    with pytest.raises(SchemaValidationError) as excinfo:
        generator.generate_object([message("user", "x")], Answer)

    assert excinfo.value.data.generated_object == {"results": "many"}
    assert excinfo.value.data.validation_errors


def test_timeout_is_normalized():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    generator, _, _ = _generator(side_effect=openai.APITimeoutError(request=request))

    with pytest.raises(GenerationTimeoutError) as excinfo:
        generator.generate_object([message("user", "x")], Answer)

    assert excinfo.value.data.timeout_ms == 60000
    assert isinstance(excinfo.value.__cause__, openai.APITimeoutError)


def test_client_error_is_not_retried():
    generator, _, chat = _generator(side_effect=StatusError(400))

    with pytest.raises(ProviderError) as excinfo:
        generator.generate_object([message("user", "x")], Answer)

    assert excinfo.value.data.status_code == 400
    assert chat.with_structured_output.return_value.invoke.call_count == 1


def test_server_error_is_retried_three_times():
    generator, _, chat = _generator(side_effect=StatusError(503))

    with pytest.raises(ProviderError):
        generator.generate_object([message("user", "x")], Answer)

    assert chat.with_structured_output.return_value.invoke.call_count == 3


def test_rate_limit_recovers_on_retry():
    ok = {"raw": AIMessage(content=""), "parsed": Answer(results=[]), "parsing_error": None}
    generator, _, chat = _generator(side_effect=[StatusError(429), ok])

    assert generator.generate_object([message("user", "x")], Answer) == Answer(results=[])
    assert chat.with_structured_output.return_value.invoke.call_count == 2


def test_generate_text_prepends_system_message():
    chat = MagicMock()
    chat.invoke.return_value = AIMessage(content="hello there")
    factory = MagicMock(return_value=chat)
    generator = StructuredGenerator(model_factory=factory)

    text = generator.generate_text([message("user", "hi")], system="Be brief.", performance="high")

    assert text == "hello there"
    factory.assert_called_once_with(Provider.OPENAI, "gpt-4o", 0.7, None)
    sent = chat.invoke.call_args.args[0]
    assert sent == [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "hi"}]


def test_default_factory_builds_openai_chat():
    chat = default_model_factory(Provider.OPENAI, "gpt-4o-mini", 0.2, 512)

    assert chat.model_name == "gpt-4o-mini"
    assert chat.max_retries == 0
