"""Inference backend implementations."""

from coach_pipeline.decisions.backend.base import InferenceBackend
from coach_pipeline.decisions.backend.openai_backend import OpenAIBackend

__all__ = [
    "InferenceBackend",
    "OpenAIBackend",
]
