from __future__ import annotations

import uuid
from typing import Any


class PipelineError(Exception):
    """Base error for lead, quotation and order workflow failures."""

    code = "pipeline_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFound(PipelineError):
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: uuid.UUID | str) -> None:
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(
            f"{entity_type} {entity_id} not found",
            details={"entity_type": entity_type, "entity_id": str(entity_id)},
        )


class InvalidTransition(PipelineError):
    """Raised when a status edge is not present in the entity's transition table."""

    code = "invalid_transition"

    def __init__(
        self,
        entity_type: str,
        from_status: str,
        to_status: str,
        *,
        entity_id: uuid.UUID | str | None = None,
        reason: str | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.from_status = from_status
        self.to_status = to_status
        self.entity_id = str(entity_id) if entity_id is not None else None
        message = f"invalid {entity_type} transition {from_status} -> {to_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            details={
                "entity_type": entity_type,
                "entity_id": self.entity_id,
                "current_status": from_status,
                "requested_status": to_status,
            },
        )


class AlreadyExists(PipelineError):
    code = "already_exists"


class AlreadyConverted(AlreadyExists):
    """Raised when a quotation already has an order referencing it."""

    code = "already_converted"

    def __init__(self, quotation_id: uuid.UUID, order_id: uuid.UUID | None = None) -> None:
        self.quotation_id = quotation_id
        self.order_id = order_id
        super().__init__(
            f"quotation {quotation_id} has already been converted to an order",
            details={
                "quotation_id": str(quotation_id),
                "order_id": str(order_id) if order_id is not None else None,
            },
        )


class Forbidden(PipelineError):
    code = "forbidden"


class InvalidQuotationInput(PipelineError):
    """Raised by the pricing engine; `field` names the offending input."""

    code = "invalid_quotation_input"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}", details={"field": field})


class ValidationFailed(PipelineError):
    code = "validation_failed"


class ConcurrencyConflict(PipelineError):
    code = "concurrency_conflict"

    def __init__(self, entity_type: str, entity_id: uuid.UUID, expected_version: int) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{entity_type} {entity_id} was modified concurrently",
            details={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "expected_version": expected_version,
            },
        )


class SequenceAllocationFailed(PipelineError):
    code = "sequence_allocation_failed"

    def __init__(self, prefix: str, year: int, attempts: int) -> None:
        self.prefix = prefix
        self.year = year
        self.attempts = attempts
        super().__init__(
            f"could not allocate a {prefix} number for {year} after {attempts} attempts",
            details={"prefix": prefix, "year": year, "attempts": attempts},
        )
