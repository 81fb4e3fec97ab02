from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from kindgate.api.deps import provide_gateway, rate_limiter, require_parent_auth
from kindgate.config import AgeGroup
from kindgate.errors import (
    ConfigurationImportError,
    RequestNotFoundError,
    RequestNotPendingError,
)
from kindgate.safety.audit import AuditEventType, AuditFilters, TimeRange
from kindgate.safety.base import ContentContext, RiskLevel
from kindgate.safety.gateway import SafetyGateway

router = APIRouter(
    prefix="/api",
    tags=["parental"],
    dependencies=[Depends(require_parent_auth), Depends(rate_limiter)],
)


class ValidateRequest(BaseModel):
    text: str
    user_id: str
    context: ContentContext | None = None
    history: list[str] | None = None


class DecisionRequest(BaseModel):
    approved: bool
    reason: str = ""
    exception_hours: float | None = Field(default=None, gt=0)
    responded_by: str = "parent"


class ApprovalRequestBody(BaseModel):
    content: str
    user_id: str


class AgeGroupUpdate(BaseModel):
    age_group: AgeGroup


# === Validation ===


@router.post("/validate/input")
async def validate_input(
    body: ValidateRequest, gateway: SafetyGateway = Depends(provide_gateway)
) -> dict[str, Any]:
    verdict = await gateway.validate_input(
        body.text, body.user_id, context=body.context, history=body.history
    )
    return verdict.to_dict()


@router.post("/validate/output")
async def validate_output(
    body: ValidateRequest, gateway: SafetyGateway = Depends(provide_gateway)
) -> dict[str, Any]:
    verdict = await gateway.validate_output(body.text, body.user_id, history=body.history)
    return verdict.to_dict()


# === Parental reviews ===


@router.post("/reviews", status_code=status.HTTP_201_CREATED)
async def create_review(
    body: ApprovalRequestBody, gateway: SafetyGateway = Depends(provide_gateway)
) -> dict[str, Any]:
    request_id = await gateway.request_approval(body.content, body.user_id)
    return {"request_id": request_id}


@router.get("/reviews/pending")
async def list_pending_reviews(
    user_id: str | None = None,
    limit: int = 50,
    gateway: SafetyGateway = Depends(provide_gateway),
) -> list[dict[str, Any]]:
    return [r.to_dict() for r in gateway.workflow.get_pending(user_id=user_id, limit=limit)]


@router.get("/reviews/{request_id}")
async def get_review(
    request_id: str, gateway: SafetyGateway = Depends(provide_gateway)
) -> dict[str, Any]:
    try:
        return gateway.workflow.get_request(request_id).to_dict()
    except RequestNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post("/reviews/{request_id}/decision")
async def decide_review(
    request_id: str,
    body: DecisionRequest,
    gateway: SafetyGateway = Depends(provide_gateway),
) -> dict[str, Any]:
    try:
        request = await gateway.process_decision(
            request_id,
            body.approved,
            reason=body.reason,
            exception_hours=body.exception_hours,
            responded_by=body.responded_by,
        )
    except RequestNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except RequestNotPendingError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return request.to_dict()


@router.get("/users/{user_id}/exceptions")
async def list_exceptions(
    user_id: str, gateway: SafetyGateway = Depends(provide_gateway)
) -> list[dict[str, Any]]:
    return [e.to_dict() for e in gateway.workflow.get_active_exceptions(user_id)]


@router.put("/users/{user_id}/age-group")
async def set_age_group(
    user_id: str,
    body: AgeGroupUpdate,
    gateway: SafetyGateway = Depends(provide_gateway),
) -> dict[str, Any]:
    revoked = gateway.set_user_age_group(user_id, body.age_group)
    return {
        "user_id": user_id,
        "age_group": body.age_group.value,
        "exceptions_revoked": revoked,
    }


# === Audit and reporting ===


@router.get("/audit")
async def query_audit_log(
    user_id: str | None = None,
    event_type: AuditEventType | None = None,
    risk_level: RiskLevel | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    gateway: SafetyGateway = Depends(provide_gateway),
) -> list[dict[str, Any]]:
    filters = AuditFilters(
        user_id=user_id,
        event_types=[event_type] if event_type else None,
        risk_levels=[risk_level] if risk_level else None,
        limit=limit,
        newest_first=True,
    )
    entries = gateway.get_audit_log(TimeRange(start=start, end=end), filters)
    return [e.model_dump(mode="json") for e in entries]


@router.get("/report")
async def get_report(
    user_id: str | None = None,
    hours: float = 24 * 7,
    gateway: SafetyGateway = Depends(provide_gateway),
) -> dict[str, Any]:
    report = gateway.generate_report(TimeRange.last(timedelta(hours=hours)), user_id)
    return report.to_dict()


@router.get("/metrics")
async def get_metrics(gateway: SafetyGateway = Depends(provide_gateway)) -> dict[str, Any]:
    return gateway.get_metrics()


# === Rule configuration ===


@router.get("/rules/export")
async def export_rules(gateway: SafetyGateway = Depends(provide_gateway)) -> dict[str, Any]:
    return gateway.rule_store.export_configuration().model_dump(mode="json")


@router.post("/rules/import")
async def import_rules(
    config: dict[str, Any], gateway: SafetyGateway = Depends(provide_gateway)
) -> dict[str, Any]:
    try:
        report = gateway.rule_store.import_configuration(config)
    except ConfigurationImportError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": e.message, "errors": e.errors},
        )
    return {
        "rule_set_version": gateway.rule_store.version,
        "warnings": report.warnings,
    }
