"""Backend interface for inference calls made by the task executor."""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel

from coach_pipeline.decisions.models import StructuredCompletion, TextCompletion


class InferenceBackend(Protocol):
    """Protocol implemented by inference providers.

    Implementations raise an exception for every provider-side failure
    (rate limit, timeout, malformed or schema-invalid output) so the executor
    can retry.
    """

    provider_name: str

    def structured_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        output_schema: type[BaseModel],
        temperature: float,
    ) -> StructuredCompletion:
        """Return output validated against `output_schema`."""

    def text_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
    ) -> TextCompletion:
        """Return unstructured text output."""
