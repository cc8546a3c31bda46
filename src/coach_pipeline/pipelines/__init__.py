"""The four pipeline stages that move an enquiry to a confirmed booking."""

from coach_pipeline.pipelines.bid_evaluation import BidEvaluationPipeline
from coach_pipeline.pipelines.common import (
    PipelineDependencies,
    PipelineOutcome,
    PipelineResult,
    PipelineStage,
)
from coach_pipeline.pipelines.intake import IntakePipeline
from coach_pipeline.pipelines.job_confirmation import JobConfirmationPipeline
from coach_pipeline.pipelines.quote_generation import QuoteGenerationPipeline

__all__ = [
    "BidEvaluationPipeline",
    "IntakePipeline",
    "JobConfirmationPipeline",
    "PipelineDependencies",
    "PipelineOutcome",
    "PipelineResult",
    "PipelineStage",
    "QuoteGenerationPipeline",
]
