"""Operator API: staging list/detail and approve/reject actions."""
from __future__ import annotations

import logging
from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder
from pydantic import AliasChoices, BaseModel, Field

from automember.api.deps import get_approval_engine
from automember.approval_engine import ApprovalEngine
from automember.errors import AutoMemberError

router = APIRouter(prefix="/api/staging", tags=["staging"])
logger = logging.getLogger(__name__)


class ApprovePayload(BaseModel):
    chosen_customer_id: int | None = Field(
        default=None,
        validation_alias=AliasChoices("chosenCustomerId", "chosenCustomerID", "chosen_customer_id"),
    )
    create_new: bool = Field(default=False, validation_alias=AliasChoices("createNew", "create_new"))
    provided_card_no: str | None = Field(
        default=None,
        validation_alias=AliasChoices("providedCardNo", "provided_card_no"),
    )
    actor: str | None = None


class RejectPayload(BaseModel):
    reason: str | None = None
    actor: str | None = None


def _raise_http(exc: AutoMemberError) -> NoReturn:
    raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())


@router.get("")
async def list_staging(
    status: str = "Pending",
    limit: int = 200,
    engine: ApprovalEngine = Depends(get_approval_engine),
) -> list[dict[str, Any]]:
    try:
        rows = await engine.list_records(status=status, limit=limit)
    except AutoMemberError as exc:
        _raise_http(exc)
    return jsonable_encoder([row.to_dict() for row in rows])


@router.get("/{staging_id}")
async def get_staging_detail(
    staging_id: str,
    engine: ApprovalEngine = Depends(get_approval_engine),
) -> dict[str, Any]:
    try:
        detail = await engine.get_detail(staging_id)
    except AutoMemberError as exc:
        _raise_http(exc)
    return jsonable_encoder(detail.to_dict())


@router.get("/{staging_id}/audit")
async def get_staging_audit(
    staging_id: str,
    engine: ApprovalEngine = Depends(get_approval_engine),
) -> list[dict[str, Any]]:
    rows = await engine.audit_trail(staging_id)
    return jsonable_encoder([row.to_dict() for row in rows])


@router.post("/{staging_id}/approve")
async def approve_staging(
    staging_id: str,
    payload: ApprovePayload,
    engine: ApprovalEngine = Depends(get_approval_engine),
) -> dict[str, Any]:
    try:
        outcome = await engine.approve(
            staging_id,
            chosen_customer_id=payload.chosen_customer_id,
            create_new=payload.create_new,
            provided_card_no=payload.provided_card_no,
            actor=payload.actor,
        )
    except AutoMemberError as exc:
        _raise_http(exc)
    return {"ok": True, **outcome.to_dict()}


@router.post("/{staging_id}/reject")
async def reject_staging(
    staging_id: str,
    payload: RejectPayload | None = None,
    engine: ApprovalEngine = Depends(get_approval_engine),
) -> dict[str, Any]:
    payload = payload or RejectPayload()
    try:
        await engine.reject(staging_id, reason=payload.reason, actor=payload.actor)
    except AutoMemberError as exc:
        _raise_http(exc)
    return {"ok": True}
