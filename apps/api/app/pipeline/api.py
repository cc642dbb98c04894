from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.core.context import get_request_context
from app.core.database import get_db
from app.core.rbac import resolve_role
from app.pipeline.errors import (
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
from app.pipeline.schemas import (
    FollowupCreate,
    FollowupRead,
    FollowupUpdate,
    LeadAssign,
    LeadCreate,
    LeadRead,
    LeadReview,
    LeadStatusUpdate,
    OrderRead,
    OrderStatusUpdate,
    PartyCreate,
    PartyRead,
    PurchaseOrderInput,
    QuotationCreate,
    QuotationDecision,
    QuotationRead,
    QuotationSend,
)
from app.pipeline.service import PipelineActor, PipelineService, pipeline_service


router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])

# Checked in order, so subclasses must precede their bases.
ERROR_STATUS_CODES: tuple[tuple[type[PipelineError], int], ...] = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (AlreadyExists, status.HTTP_409_CONFLICT),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (InvalidQuotationInput, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationFailed, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (SequenceAllocationFailed, status.HTTP_503_SERVICE_UNAVAILABLE),
)


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def status_code_for(exc: PipelineError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    return error_response(
        request,
        status_code=status_code_for(exc),
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_pipeline_actor(request: Request, auth_user: AuthUser = Depends(get_current_user)) -> PipelineActor:
    role = resolve_role(auth_user.roles)
    context = get_request_context(request)
    if context is not None:
        context.role = role
    return PipelineActor(
        user_id=auth_user.sub,
        role=role,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


def get_pipeline_service() -> PipelineService:
    return pipeline_service


@router.post("/parties", response_model=PartyRead, status_code=status.HTTP_201_CREATED)
def create_party(
    dto: PartyCreate,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> PartyRead:
    return service.create_party(db, actor, dto)


@router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    dto: LeadCreate,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> LeadRead:
    return service.create_lead(db, actor, dto)


@router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> LeadRead:
    return service.get_lead(db, actor, lead_id)


@router.post("/leads/{lead_id}/review", response_model=LeadRead)
def review_lead(
    lead_id: uuid.UUID,
    dto: LeadReview,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> LeadRead:
    return service.review_lead(db, actor, lead_id, dto.decision, dto.remarks)


@router.post("/leads/{lead_id}/assign", response_model=LeadRead)
def assign_sales_person(
    lead_id: uuid.UUID,
    dto: LeadAssign,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> LeadRead:
    return service.assign_sales_person(db, actor, lead_id, dto.sales_person_id, dto.reason)


@router.post("/leads/{lead_id}/status", response_model=LeadRead)
def update_lead_status(
    lead_id: uuid.UUID,
    dto: LeadStatusUpdate,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> LeadRead:
    return service.update_lead_status(db, actor, lead_id, dto.status)


@router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> None:
    service.delete_lead(db, actor, lead_id)


@router.post("/leads/{lead_id}/followups", response_model=FollowupRead, status_code=status.HTTP_201_CREATED)
def create_followup(
    lead_id: uuid.UUID,
    dto: FollowupCreate,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> FollowupRead:
    return service.create_followup(db, actor, lead_id, dto)


@router.get("/leads/{lead_id}/followups", response_model=list[FollowupRead])
def list_followups(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> list[FollowupRead]:
    return service.list_followups(db, actor, lead_id)


@router.get("/followups/upcoming", response_model=list[FollowupRead])
def upcoming_followups(
    days: int = Query(default=7, ge=0, le=90),
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> list[FollowupRead]:
    return service.upcoming_followups(db, actor, days)


@router.patch("/followups/{followup_id}", response_model=FollowupRead)
def update_followup(
    followup_id: uuid.UUID,
    dto: FollowupUpdate,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> FollowupRead:
    return service.update_followup(db, actor, followup_id, dto)


@router.post("/quotations", response_model=QuotationRead, status_code=status.HTTP_201_CREATED)
def create_quotation(
    dto: QuotationCreate,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> QuotationRead:
    return service.create_quotation(db, actor, dto)


@router.get("/quotations/{quotation_id}", response_model=QuotationRead)
def get_quotation(
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> QuotationRead:
    return service.get_quotation(db, actor, quotation_id)


@router.post("/quotations/{quotation_id}/send", response_model=QuotationRead)
def send_quotation(
    quotation_id: uuid.UUID,
    dto: QuotationSend | None = None,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> QuotationRead:
    cc_emails = [str(address) for address in dto.cc_emails] if dto is not None else []
    return service.send_quotation(db, actor, quotation_id, cc_emails)


@router.post("/quotations/{quotation_id}/decision", response_model=QuotationRead)
def decide_quotation(
    quotation_id: uuid.UUID,
    dto: QuotationDecision,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> QuotationRead:
    return service.decide_quotation(db, actor, quotation_id, dto.decision)


@router.post("/quotations/{quotation_id}/convert", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def convert_to_order(
    quotation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> OrderRead:
    return service.convert_to_order(db, actor, quotation_id)


@router.get("/orders/{order_id}", response_model=OrderRead)
def get_order(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> OrderRead:
    return service.get_order(db, actor, order_id)


@router.post("/orders/{order_id}/po", response_model=OrderRead)
def receive_po(
    order_id: uuid.UUID,
    dto: PurchaseOrderInput,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> OrderRead:
    return service.receive_po(db, actor, order_id, dto)


@router.post("/orders/{order_id}/status", response_model=OrderRead)
def update_order_status(
    order_id: uuid.UUID,
    dto: OrderStatusUpdate,
    db: Session = Depends(get_db),
    actor: PipelineActor = Depends(get_pipeline_actor),
    service: PipelineService = Depends(get_pipeline_service),
) -> OrderRead:
    return service.update_order_status(db, actor, order_id, dto.status)
