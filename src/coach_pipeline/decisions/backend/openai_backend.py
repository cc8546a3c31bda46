"""OpenAI chat completions backend."""

from __future__ import annotations

import time

import openai
from openai import OpenAI
from pydantic import BaseModel, ValidationError

from coach_pipeline.decisions.failure_classifier import ProviderError, classify_provider_failure
from coach_pipeline.decisions.models import (
    FailureClass,
    StructuredCompletion,
    TextCompletion,
    TokenUsage,
)


class OpenAIBackend:
    """Structured and text completions via the OpenAI SDK.

    SDK-level retries are disabled: the task executor owns the retry policy
    so that every attempt is accounted for in one place.
    """

    provider_name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None = None,
        timeout_seconds: float = 60.0,
        client: OpenAI | None = None,
    ) -> None:
        self.client = client or OpenAI(
            api_key=api_key or None,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=0,
        )

    def structured_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        output_schema: type[BaseModel],
        temperature: float,
    ) -> StructuredCompletion:
        started = time.monotonic()
        response = self._create(
            model=model,
            messages=messages,
            temperature=temperature,
            response_format={
                "type": "json_schema",
                "json_schema": {
                    "name": output_schema.__name__,
                    "schema": output_schema.model_json_schema(),
                    "strict": False,
                },
            },
        )
        latency_ms = int((time.monotonic() - started) * 1000)
        content = _first_message_content(response)
        try:
            parsed = output_schema.model_validate_json(content)
        except ValidationError as error:
            raise ProviderError(
                f"Structured output failed validation for {output_schema.__name__}: {error}",
                failure_class=FailureClass.OUTPUT_INVALID,
            ) from error
        return StructuredCompletion(
            parsed=parsed,
            raw_text=content,
            usage=_usage(response),
            latency_ms=latency_ms,
            model=response.model or model,
        )

    def text_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
    ) -> TextCompletion:
        started = time.monotonic()
        response = self._create(model=model, messages=messages, temperature=temperature)
        latency_ms = int((time.monotonic() - started) * 1000)
        return TextCompletion(
            text=_first_message_content(response),
            usage=_usage(response),
            latency_ms=latency_ms,
            model=response.model or model,
        )

    def _create(self, **kwargs):
        try:
            return self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as error:
            classification = classify_provider_failure(provider=self.provider_name, error=error)
            raise ProviderError(
                f"{type(error).__name__}: {error}",
                failure_class=classification.failure_class,
            ) from error


def _first_message_content(response) -> str:
    if not response.choices:
        raise ProviderError(
            "Empty completion: no choices",
            failure_class=FailureClass.OUTPUT_INVALID,
        )
    message = response.choices[0].message
    if getattr(message, "refusal", None):
        raise ProviderError(
            f"Model refused: {message.refusal}",
            failure_class=FailureClass.OUTPUT_INVALID,
        )
    content = message.content
    if not content or not content.strip():
        raise ProviderError("Empty completion content", failure_class=FailureClass.OUTPUT_INVALID)
    return content


def _usage(response) -> TokenUsage:
    usage = response.usage
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=usage.prompt_tokens or 0,
        completion_tokens=usage.completion_tokens or 0,
        total_tokens=usage.total_tokens or 0,
    )
