"""Search metering router: session keys and per-page row billing."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth import ensure_account
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.consumption import charge_search_page
from services.credit_errors import InsufficientBalance
from services.search_key import canonical_query, derive_search_key, generate_row_fingerprint, normalize_date

router = APIRouter()
logger = logging.getLogger(__name__)


class SearchFilter(BaseModel):
    type: str
    value: str


class DateRange(BaseModel):
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("from_", "to")
    @classmethod
    def validate_bound(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        # An unreadable bound would otherwise hash like an open range.
        if not normalize_date(value):
            raise ValueError("date bounds must be ISO dates (YYYY-MM-DD).")
        return value


class SearchQuery(BaseModel):
    category: str = ""
    keyword: str = ""
    filters: List[SearchFilter] = Field(default_factory=list)
    date_range: Optional[DateRange] = None
    sort_order: str = "desc"

    def as_mapping(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        payload["date_range"] = payload.get("date_range") or {}
        return payload


class SessionKeyRequest(BaseModel):
    query: SearchQuery


class ChargePageRequest(BaseModel):
    user_id: Optional[str] = None
    search_key: Optional[str] = None
    query: Optional[SearchQuery] = None
    page_number: int = Field(default=1, ge=1)
    row_fingerprints: List[str] = Field(default_factory=list, max_length=1000)
    rows: List[Dict[str, Any]] = Field(default_factory=list, max_length=1000)
    meta: Dict[str, Any] = Field(default_factory=dict)


@router.post("/session_key")
async def session_key(
    request: SessionKeyRequest,
    auth: AuthContext = Depends(get_auth_context),
):
    query = request.query.as_mapping()
    return {
        "search_key": derive_search_key(query),
        "canonical_query": canonical_query(query),
    }


@router.post("/charge_page")
async def charge_page(
    request: ChargePageRequest,
    _rate_limit: None = Depends(rate_limit("search_charge_page", limit=600, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Bill the rows of one result page that were not billed earlier in the same search."""
    ensure_user_scope(auth, request.user_id)

    if request.search_key:
        search_key = request.search_key.strip()
    elif request.query is not None:
        search_key = derive_search_key(request.query.as_mapping())
    else:
        raise HTTPException(status_code=422, detail="search_key or query is required.")

    fingerprints = list(request.row_fingerprints)
    fingerprints.extend(generate_row_fingerprint(row) for row in request.rows)

    await ensure_account(db, auth)
    result = await charge_search_page(
        db,
        account_id=auth.account_id,
        search_key=search_key,
        page_number=request.page_number,
        row_fingerprints=fingerprints,
        meta=request.meta,
    )
    if not result.success:
        raise InsufficientBalance(required=result.required or 0, available=result.new_balance)
    return result.to_dict()
