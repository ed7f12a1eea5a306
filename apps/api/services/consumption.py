"""Usage consumption gateway: search page billing and conditional AI enrichment charges."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from config import settings
from models.credit_ledger import ActionType, CreditLedger
from models.enrichment_run import TERMINAL_ENRICHMENT_STATUSES, EnrichmentRun, EnrichmentStatus
from services.charge_gate import charge_gate
from services.credit_errors import (
    AccountNotFound,
    DownstreamWorkFailure,
    EnrichmentRunNotFound,
    InvalidLedgerRequest,
    RefundNotAllowed,
    TransientStoreFailure,
    UpstreamProviderFailure,
)
from services.credits import (
    ACCOUNT_NOT_FOUND,
    INSUFFICIENT_BALANCE,
    apply_ledger_entry,
    get_credit_balance,
    refund_ledger_entry,
)
from services.enrichment_provider import ENRICHABLE_FIELDS, EnrichmentResult
from services.fingerprint_dedup import activate_search_session, filter_unbilled, mark_billed
from services.search_key import fingerprint_set_digest

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STORE_ERRORS = (OperationalError, InterfaceError)


@dataclass
class SearchPageCharge:
    success: bool
    new_balance: int
    charged_count: int = 0
    error: Optional[str] = None
    required: Optional[int] = None
    search_key: Optional[str] = None
    page_number: Optional[int] = None
    entry_id: Optional[str] = None
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "new_balance": self.new_balance,
            "charged_count": self.charged_count,
            "search_key": self.search_key,
            "page_number": self.page_number,
            "entry_id": self.entry_id,
            "replayed": self.replayed,
        }
        if self.error:
            payload["error"] = self.error
        if self.required is not None:
            payload["required"] = self.required
        return payload


@dataclass
class EnrichmentCharge:
    success: bool
    run_id: str
    status: str
    charged: bool
    new_balance: int
    credit_cost: int = 0
    filled_fields: List[str] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    entry_id: Optional[str] = None
    refund_entry_id: Optional[str] = None
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "run_id": self.run_id,
            "status": self.status,
            "charged": self.charged,
            "new_balance": self.new_balance,
            "credit_cost": self.credit_cost,
            "filled_fields": list(self.filled_fields),
            "result": self.result,
            "entry_id": self.entry_id,
            "refund_entry_id": self.refund_entry_id,
            "replayed": self.replayed,
        }
        if self.error:
            payload["error"] = self.error
        return payload


def _log_store_retry(idempotency_key: Optional[str]) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        logger.warning(
            "Transient ledger store failure attempt=%s key=%s: %s",
            retry_state.attempt_number,
            idempotency_key,
            retry_state.outcome.exception() if retry_state.outcome else None,
        )

    return log


async def _with_store_retries(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    idempotency_key: Optional[str] = None,
) -> T:
    """Re-run ``operation`` on transient store errors; it must be safe to repeat."""
    attempts = max(int(settings.LEDGER_RETRY_ATTEMPTS), 1)
    backoff = max(float(settings.LEDGER_RETRY_BACKOFF_SECONDS), 0.0)

    async def attempt_once() -> T:
        try:
            return await operation()
        except TRANSIENT_STORE_ERRORS:
            await db.rollback()
            raise

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_incrementing(start=backoff, increment=backoff),
        retry=retry_if_exception_type(TRANSIENT_STORE_ERRORS),
        before_sleep=_log_store_retry(idempotency_key),
    )
    try:
        return await retrying(attempt_once)
    except RetryError as exc:
        logger.error("Ledger store still failing after %s attempts key=%s", attempts, idempotency_key)
        raise TransientStoreFailure(idempotency_key=idempotency_key, attempts=attempts) from exc


async def _entry_by_key(db: AsyncSession, idempotency_key: str) -> Optional[CreditLedger]:
    result = await db.execute(select(CreditLedger).where(CreditLedger.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def _resolve_page_key(db: AsyncSession, base_key: str) -> str:
    """Skip past keys whose charge was refunded so the released rows bill again."""
    key = base_key
    generation = 0
    while True:
        entry = await _entry_by_key(db, key)
        if entry is None:
            return key
        refund = await _entry_by_key(db, f"refund:{entry.id}")
        if refund is None:
            return key
        generation += 1
        key = f"{base_key}:r{generation}"


# ---------------------------------------------------------------------------
# Search page billing
# ---------------------------------------------------------------------------


async def charge_search_page(
    db: AsyncSession,
    *,
    account_id: str,
    search_key: str,
    page_number: int,
    row_fingerprints: Sequence[str],
    meta: Optional[Mapping[str, Any]] = None,
) -> SearchPageCharge:
    """
    Charge one credit per result row not yet billed in the active search session.

    Rows already billed under the same search key cost nothing again, across
    pages and revisits. The ledger entry and the fingerprint merge commit in a
    single transaction; an insufficient balance returns ``success=False``
    with nothing written.
    """
    key = str(search_key or "").strip()
    if not key:
        raise InvalidLedgerRequest("search_key is required.")
    page = int(page_number)
    if page < 1:
        raise InvalidLedgerRequest("page_number must be >= 1.")
    unit_cost = max(int(settings.CREDIT_COST_SEARCH_ROW), 0)

    async def attempt() -> SearchPageCharge:
        session = await activate_search_session(db, account_id, key)
        session_id = session.id
        unbilled = await filter_unbilled(db, session, row_fingerprints)
        if not unbilled:
            await db.commit()
            return SearchPageCharge(
                success=True,
                new_balance=await get_credit_balance(account_id, db),
                search_key=key,
                page_number=page,
            )

        if unit_cost == 0:
            await mark_billed(db, session, unbilled, ledger_entry_id=None)
            await db.commit()
            return SearchPageCharge(
                success=True,
                new_balance=await get_credit_balance(account_id, db),
                charged_count=len(unbilled),
                search_key=key,
                page_number=page,
            )

        cost = unit_cost * len(unbilled)
        idempotency_key = await _resolve_page_key(
            db, f"bl:{session_id}:p{page}:{fingerprint_set_digest(unbilled)}"
        )
        outcome = await apply_ledger_entry(
            db,
            account_id=account_id,
            idempotency_key=idempotency_key,
            action_type=ActionType.SEARCH_PAGE_CHARGE,
            amount=-cost,
            metadata={
                **dict(meta or {}),
                "search_key": key,
                "session_id": session_id,
                "page_number": page,
                "charged_count": len(unbilled),
            },
        )

        if not outcome.success:
            await db.rollback()
            if outcome.error == ACCOUNT_NOT_FOUND:
                raise AccountNotFound(account_id)
            return SearchPageCharge(
                success=False,
                new_balance=outcome.new_balance,
                error=INSUFFICIENT_BALANCE,
                required=cost,
                search_key=key,
                page_number=page,
            )

        if outcome.replayed:
            # Another writer already charged these rows under the same key.
            # Record them as billed so later calls stop at the dedup set.
            session = await activate_search_session(db, account_id, key)
            missing = await filter_unbilled(db, session, unbilled)
            if missing:
                await mark_billed(db, session, missing, ledger_entry_id=outcome.entry_id)
            await db.commit()
            logger.info("Search page replayed account=%s key=%s entry=%s", account_id, key, outcome.entry_id)
            return SearchPageCharge(
                success=True,
                new_balance=outcome.new_balance,
                search_key=key,
                page_number=page,
                entry_id=outcome.entry_id,
                replayed=True,
            )

        await mark_billed(db, session, unbilled, ledger_entry_id=outcome.entry_id)
        await db.commit()
        return SearchPageCharge(
            success=True,
            new_balance=outcome.new_balance,
            charged_count=len(unbilled),
            search_key=key,
            page_number=page,
            entry_id=outcome.entry_id,
        )

    async with charge_gate.exclusive(f"search:{account_id}"):
        return await _with_store_retries(db, attempt, idempotency_key=f"search:{account_id}:{key}:p{page}")


# ---------------------------------------------------------------------------
# AI enrichment billing
# ---------------------------------------------------------------------------


def _is_blank(value: Any) -> bool:
    return value is None or not str(value).strip()


def useful_enrichment_fields(existing: Mapping[str, Any], result: EnrichmentResult) -> List[str]:
    """Fields that were empty before and now carry a value backed by evidence."""
    filled = []
    for field_name in ENRICHABLE_FIELDS:
        if not _is_blank(existing.get(field_name)):
            continue
        if _is_blank(result.fields.get(field_name)):
            continue
        if not result.evidence.get(field_name):
            continue
        filled.append(field_name)
    return filled


def has_useful_enrichment(existing: Mapping[str, Any], result: EnrichmentResult) -> bool:
    return bool(useful_enrichment_fields(existing, result))


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, EnrichmentStatus) else str(status)


def _net_charged(run: EnrichmentRun) -> bool:
    """A refunded run no longer counts as charged."""
    return bool(run.charged) and _status_value(run.status) != EnrichmentStatus.REFUNDED.value


def serialize_enrichment_run(run: EnrichmentRun) -> Dict[str, Any]:
    return {
        "run_id": run.id,
        "target_id": run.target_id,
        "status": _status_value(run.status),
        "charged": _net_charged(run),
        "credit_cost": int(run.credit_cost or 0),
        "ledger_entry_id": run.ledger_entry_id,
        "refund_entry_id": run.refund_entry_id,
        "filled_fields": list(run.filled_fields or []),
        "result": run.output_json,
        "result_summary": run.result_summary,
        "confidence_level": run.confidence_level,
        "error": run.error_message,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "updated_at": run.updated_at.isoformat() if run.updated_at else None,
    }


async def get_enrichment_run(db: AsyncSession, account_id: str, run_id: str) -> EnrichmentRun:
    run = await db.get(EnrichmentRun, run_id)
    if run is None or run.user_id != account_id:
        raise EnrichmentRunNotFound(run_id)
    return run


async def _recorded_outcome(db: AsyncSession, run: EnrichmentRun, *, replayed: bool) -> EnrichmentCharge:
    status = _status_value(run.status)
    return EnrichmentCharge(
        success=status != EnrichmentStatus.FAILED.value,
        run_id=run.id,
        status=status,
        charged=_net_charged(run),
        new_balance=await get_credit_balance(run.user_id, db),
        credit_cost=int(run.credit_cost or 0),
        filled_fields=list(run.filled_fields or []),
        result=run.output_json,
        error=run.error_message,
        entry_id=run.ledger_entry_id,
        refund_entry_id=run.refund_entry_id,
        replayed=replayed,
    )


async def _mark_run(db: AsyncSession, run_id: str, **values: Any) -> EnrichmentRun:
    run = await db.get(EnrichmentRun, run_id)
    for name, value in values.items():
        setattr(run, name, value)
    await db.commit()
    return run


async def _refund_run_charge(db: AsyncSession, account_id: str, run_id: str, reason: str) -> Optional[str]:
    """Refund whatever was charged under the run's key; returns the refund entry id."""
    entry = await _entry_by_key(db, f"enrich:{run_id}")
    if entry is None:
        return None
    outcome = await refund_ledger_entry(account_id, db, entry_id=entry.id, reason=reason, commit=False)
    logger.info("Enrichment charge refunded run=%s entry=%s refund=%s", run_id, entry.id, outcome.entry_id)
    return outcome.entry_id


async def charge_enrichment(
    db: AsyncSession,
    *,
    account_id: str,
    target_id: str,
    run_id: str,
    operation: Callable[[], Awaitable[EnrichmentResult]],
    existing_fields: Optional[Mapping[str, Any]] = None,
    deliver: Optional[Callable[[EnrichmentResult], Awaitable[Any]]] = None,
    request_payload: Optional[Dict[str, Any]] = None,
) -> EnrichmentCharge:
    """
    Run one AI enrichment and charge only when it produced useful data.

    Nothing is charged up front. The provider call runs first; a single
    ``AI_ENRICH_CHARGE`` keyed by ``enrich:<run_id>`` is recorded only when a
    previously empty field came back filled with evidence. Calling again
    with the same ``run_id`` returns the recorded outcome.
    """
    run_key = str(run_id or "").strip()
    if not run_key:
        raise InvalidLedgerRequest("run_id is required.")
    existing = dict(existing_fields or {})
    cost = max(int(settings.CREDIT_COST_AI_ENRICH), 0)

    async with charge_gate.exclusive(f"enrichment:{run_key}"):
        run = await db.get(EnrichmentRun, run_key)
        if run is not None:
            if run.user_id != account_id:
                raise InvalidLedgerRequest("run_id was already used by another account.")
            if run.status in TERMINAL_ENRICHMENT_STATUSES:
                logger.info("Enrichment replay run=%s status=%s", run_key, _status_value(run.status))
                return await _recorded_outcome(db, run, replayed=True)
            run.status = EnrichmentStatus.PENDING
            run.error_message = None
            run.credit_cost = cost
            await db.commit()
        else:
            run = EnrichmentRun(
                id=run_key,
                user_id=account_id,
                target_id=target_id,
                idempotency_key=f"enrich:{run_key}",
                status=EnrichmentStatus.PENDING,
                charged=False,
                credit_cost=cost,
                input_json=request_payload or {"target_id": target_id, "existing": existing},
            )
            db.add(run)
            await db.commit()

        # Advisory only; the conditional ledger update is the real guard.
        balance = await get_credit_balance(account_id, db)
        if balance < cost:
            await _mark_run(db, run_key, status=EnrichmentStatus.FAILED, error_message=INSUFFICIENT_BALANCE)
            logger.warning(
                "Enrichment blocked by balance run=%s account=%s required=%s available=%s",
                run_key,
                account_id,
                cost,
                balance,
            )
            return EnrichmentCharge(
                success=False,
                run_id=run_key,
                status=EnrichmentStatus.FAILED.value,
                charged=False,
                new_balance=balance,
                credit_cost=cost,
                error=INSUFFICIENT_BALANCE,
            )

        try:
            result = await operation()
        except Exception as exc:
            await db.rollback()
            refund_entry_id = await _refund_run_charge(db, account_id, run_key, "Enrichment provider failure")
            await _mark_run(
                db,
                run_key,
                status=EnrichmentStatus.FAILED,
                error_message=str(exc)[:500] or exc.__class__.__name__,
                refund_entry_id=refund_entry_id,
            )
            logger.warning("Enrichment provider failed run=%s: %s", run_key, exc)
            if isinstance(exc, UpstreamProviderFailure):
                raise
            raise UpstreamProviderFailure(reason=str(exc)) from exc

        filled = useful_enrichment_fields(existing, result)
        output = result.to_dict()
        if not filled:
            await _mark_run(
                db,
                run_key,
                status=EnrichmentStatus.SKIPPED,
                charged=False,
                credit_cost=0,
                output_json=output,
                filled_fields=[],
                result_summary=result.summary,
                confidence_level=result.confidence_level,
            )
            logger.info("Enrichment skipped without useful data run=%s target=%s", run_key, target_id)
            return EnrichmentCharge(
                success=True,
                run_id=run_key,
                status=EnrichmentStatus.SKIPPED.value,
                charged=False,
                new_balance=balance,
                result=output,
            )

        entry_id = None
        new_balance = balance
        if cost > 0:

            async def attempt():
                return await apply_ledger_entry(
                    db,
                    account_id=account_id,
                    idempotency_key=f"enrich:{run_key}",
                    action_type=ActionType.AI_ENRICH_CHARGE,
                    amount=-cost,
                    metadata={"run_id": run_key, "target_id": target_id, "filled_fields": filled},
                )

            outcome = await _with_store_retries(db, attempt, idempotency_key=f"enrich:{run_key}")
            if not outcome.success:
                await db.rollback()
                if outcome.error == ACCOUNT_NOT_FOUND:
                    raise AccountNotFound(account_id)
                await _mark_run(db, run_key, status=EnrichmentStatus.FAILED, error_message=INSUFFICIENT_BALANCE)
                return EnrichmentCharge(
                    success=False,
                    run_id=run_key,
                    status=EnrichmentStatus.FAILED.value,
                    charged=False,
                    new_balance=outcome.new_balance,
                    credit_cost=cost,
                    error=INSUFFICIENT_BALANCE,
                )
            entry_id = outcome.entry_id
            new_balance = outcome.new_balance

        await _mark_run(
            db,
            run_key,
            status=EnrichmentStatus.CHARGED,
            charged=entry_id is not None,
            credit_cost=cost,
            ledger_entry_id=entry_id,
            output_json=output,
            filled_fields=filled,
            result_summary=result.summary,
            confidence_level=result.confidence_level,
        )
        logger.info("Enrichment charged run=%s cost=%s fields=%s", run_key, cost, filled)

        if deliver is not None:
            try:
                await deliver(result)
            except Exception as exc:
                await db.rollback()
                refund_entry_id = await _refund_run_charge(db, account_id, run_key, "Enrichment delivery failure")
                await _mark_run(
                    db,
                    run_key,
                    status=EnrichmentStatus.REFUNDED,
                    refund_entry_id=refund_entry_id,
                    error_message=str(exc)[:500] or exc.__class__.__name__,
                )
                raise DownstreamWorkFailure(refund_entry_id=refund_entry_id, reason=str(exc)) from exc

        return EnrichmentCharge(
            success=True,
            run_id=run_key,
            status=EnrichmentStatus.CHARGED.value,
            charged=entry_id is not None,
            new_balance=new_balance,
            credit_cost=cost,
            filled_fields=filled,
            result=output,
            entry_id=entry_id,
        )


async def refund_enrichment_run(
    db: AsyncSession,
    *,
    account_id: str,
    run_id: str,
    reason: str = "Enrichment refund",
) -> EnrichmentCharge:
    """Reverse a charged enrichment run (CHARGED -> REFUNDED); repeat calls are no-ops."""
    async with charge_gate.exclusive(f"enrichment:{run_id}"):
        run = await get_enrichment_run(db, account_id, run_id)
        if run.status == EnrichmentStatus.REFUNDED:
            return await _recorded_outcome(db, run, replayed=True)
        if run.status != EnrichmentStatus.CHARGED:
            raise RefundNotAllowed(
                "Only charged enrichment runs can be refunded.",
                details={"run_id": run_id, "status": _status_value(run.status)},
            )
        refund_entry_id = await _refund_run_charge(db, account_id, run_id, reason)
        run = await _mark_run(db, run_id, status=EnrichmentStatus.REFUNDED, refund_entry_id=refund_entry_id)
        return await _recorded_outcome(db, run, replayed=False)
