from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from opentelemetry import trace

from app.context import get_correlation_id
from app.pipeline.models import PipelineQuotation


logger = logging.getLogger("app.pipeline.mailer")
tracer = trace.get_tracer("app.pipeline.mailer")


class QuotationMailer(Protocol):
    def send_quotation(self, quotation: PipelineQuotation, to: str, cc: Sequence[str]) -> None: ...


class LoggingQuotationMailer:
    """Records the delivery request only; rendering and transport live outside this service."""

    def send_quotation(self, quotation: PipelineQuotation, to: str, cc: Sequence[str]) -> None:
        with tracer.start_as_current_span("pipeline.mailer.send_quotation") as span:
            span.set_attribute("quotation_id", str(quotation.id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            logger.info(
                "quotation.mail_requested",
                extra={
                    "entity_type": "quotation",
                    "entity_id": str(quotation.id),
                    "sequence_number": quotation.quotation_no,
                    "recipients": [to, *cc],
                },
            )
