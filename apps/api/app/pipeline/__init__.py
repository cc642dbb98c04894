from app.pipeline.api import router
from app.pipeline.errors import (
    AlreadyConverted,
    AlreadyExists,
    ConcurrencyConflict,
    Forbidden,
    InvalidQuotationInput,
    InvalidTransition,
    NotFound,
    PipelineError,
    SequenceAllocationFailed,
    ValidationFailed,
)
from app.pipeline.pricing import QuotationBreakdown, compute_quotation
from app.pipeline.sequence import SequenceGenerator
from app.pipeline.service import PipelineActor, PipelineService, pipeline_service
from app.pipeline.state_machine import CANONICAL_POLICY, LEGACY_POLICY, PipelinePolicy, get_policy

__all__ = [
    "router",
    "PipelineError",
    "NotFound",
    "InvalidTransition",
    "AlreadyExists",
    "AlreadyConverted",
    "Forbidden",
    "InvalidQuotationInput",
    "ValidationFailed",
    "ConcurrencyConflict",
    "SequenceAllocationFailed",
    "QuotationBreakdown",
    "compute_quotation",
    "SequenceGenerator",
    "PipelineActor",
    "PipelineService",
    "pipeline_service",
    "PipelinePolicy",
    "CANONICAL_POLICY",
    "LEGACY_POLICY",
    "get_policy",
]
