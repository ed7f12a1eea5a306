"""Billing and credits router."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.credit_ledger import ActionType
from routers.auth import ensure_account
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import (
    add_credit_top_up,
    get_credit_summary,
    list_ledger_entries,
    reconcile_credit_account,
    refund_ledger_entry,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    user_id: Optional[str] = None
    credits: int = Field(ge=1, le=10000)
    billing_reference: Optional[str] = Field(default=None, max_length=128)


class RefundRequest(BaseModel):
    user_id: Optional[str] = None
    entry_id: str = Field(min_length=1)
    reason: str = Field(default="Manual refund", max_length=255)


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    ensure_user_scope(auth, user_id)
    await ensure_account(db, auth)
    return await get_credit_summary(auth.user_id, db)


@router.get("/ledger")
async def ledger_entries(
    user_id: Optional[str] = Query(default=None),
    action_type: Optional[ActionType] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    ensure_user_scope(auth, user_id)
    await ensure_account(db, auth)
    entries = await list_ledger_entries(auth.user_id, db, limit=limit, offset=offset, action_type=action_type)
    return {
        "entries": entries,
        "limit": limit,
        "offset": offset,
    }


@router.get("/reconcile")
async def reconcile(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(db, auth)
    return await reconcile_credit_account(auth.user_id, db)


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    ensure_user_scope(auth, request.user_id)
    if not settings.MANUAL_TOPUP_ENABLED:
        raise HTTPException(status_code=403, detail="Manual top-ups are disabled.")
    await ensure_account(db, auth)

    billing_reference = request.billing_reference or str(uuid.uuid4())
    outcome = await add_credit_top_up(
        auth.user_id,
        db,
        credits=request.credits,
        billing_reference=billing_reference,
        provider="manual",
    )
    return {
        "ok": outcome.success,
        "credits_added": request.credits if not outcome.replayed else 0,
        "balance_after": outcome.new_balance,
        "billing_reference": billing_reference,
        "entry_id": outcome.entry_id,
        "replayed": outcome.replayed,
    }


@router.post("/refund")
async def refund_entry(
    request: RefundRequest,
    _rate_limit: None = Depends(rate_limit("billing_refund", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    ensure_user_scope(auth, request.user_id)
    if not settings.MANUAL_REFUND_ENABLED:
        raise HTTPException(status_code=403, detail="Manual refunds are disabled.")
    await ensure_account(db, auth)
    outcome = await refund_ledger_entry(auth.user_id, db, entry_id=request.entry_id, reason=request.reason)
    logger.info("Manual refund account=%s entry=%s refund=%s", auth.user_id, request.entry_id, outcome.entry_id)
    return outcome.to_dict()
