"""AI buyer enrichment router with charge-after-value-delivered billing."""

from __future__ import annotations

import logging
import uuid
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth import ensure_account
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.consumption import (
    charge_enrichment,
    get_enrichment_run,
    refund_enrichment_run,
    serialize_enrichment_run,
)
from services.credit_errors import InsufficientBalance
from services.enrichment_provider import EnrichmentRequest, enrich_buyer_profile

router = APIRouter()
logger = logging.getLogger(__name__)


class EnrichmentRunRequest(BaseModel):
    user_id: Optional[str] = None
    run_id: Optional[str] = Field(default=None, max_length=64)
    target_id: str = Field(min_length=1, max_length=128)
    buyer_name: str = Field(min_length=1, max_length=255)
    country: Optional[str] = None
    country_calling_code: Optional[str] = None
    existing: Dict[str, Optional[str]] = Field(default_factory=dict)


class EnrichmentRefundRequest(BaseModel):
    reason: str = Field(default="Enrichment refund", max_length=255)


@router.post("/run")
async def run_enrichment(
    request: EnrichmentRunRequest,
    _rate_limit: None = Depends(rate_limit("enrichment_run", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Enrich one buyer record. Credits are charged only when a previously
    empty field comes back filled with evidence; retries with the same
    ``run_id`` return the recorded outcome.
    """
    ensure_user_scope(auth, request.user_id)
    await ensure_account(db, auth)

    run_id = request.run_id or str(uuid.uuid4())
    provider_request = EnrichmentRequest(
        target_id=request.target_id,
        buyer_name=request.buyer_name,
        country=request.country,
        country_calling_code=request.country_calling_code,
        existing=dict(request.existing),
    )

    async def operation():
        return await enrich_buyer_profile(provider_request)

    result = await charge_enrichment(
        db,
        account_id=auth.account_id,
        target_id=request.target_id,
        run_id=run_id,
        operation=operation,
        existing_fields=request.existing,
        request_payload=provider_request.to_dict(),
    )
    if not result.success:
        raise InsufficientBalance(
            required=max(int(settings.CREDIT_COST_AI_ENRICH), 0),
            available=result.new_balance,
        )
    return result.to_dict()


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    run = await get_enrichment_run(db, auth.user_id, run_id)
    return serialize_enrichment_run(run)


@router.post("/runs/{run_id}/refund")
async def refund_run(
    run_id: str,
    request: Optional[EnrichmentRefundRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if not settings.MANUAL_REFUND_ENABLED:
        raise HTTPException(status_code=403, detail="Manual refunds are disabled.")
    reason = request.reason if request else "Enrichment refund"
    result = await refund_enrichment_run(db, account_id=auth.account_id, run_id=run_id, reason=reason)
    logger.info("Enrichment run refunded account=%s run=%s", auth.user_id, run_id)
    return result.to_dict()
