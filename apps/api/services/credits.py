"""Credit ledger and usage accounting helpers."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import CreditAccount
from models.credit_ledger import CHARGE_ACTIONS, ActionType, CreditLedger
from services.credit_errors import (
    AccountNotFound,
    InvalidLedgerRequest,
    LedgerEntryNotFound,
    RefundNotAllowed,
)
from services.fingerprint_dedup import release_entry_fingerprints

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
MAX_IDEMPOTENCY_KEY_LENGTH = 255


@dataclass
class LedgerOutcome:
    """Result of one LedgerRPC call."""

    success: bool
    new_balance: int
    error: Optional[str] = None
    entry_id: Optional[str] = None
    amount: int = 0
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "new_balance": self.new_balance,
            "entry_id": self.entry_id,
            "replayed": self.replayed,
        }
        if self.error:
            payload["error"] = self.error
        return payload


def _validate_request(
    idempotency_key: str,
    action_type: Union[ActionType, str],
    amount: int,
) -> Tuple[str, ActionType, int]:
    key = str(idempotency_key or "").strip()
    if not key:
        raise InvalidLedgerRequest("idempotency_key is required.")
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise InvalidLedgerRequest("idempotency_key is too long.")
    try:
        action = ActionType(action_type)
    except ValueError as exc:
        raise InvalidLedgerRequest(f"Unknown action_type: {action_type}") from exc

    delta = int(amount)
    if delta == 0:
        raise InvalidLedgerRequest("amount must be non-zero.")
    if action in CHARGE_ACTIONS and delta > 0:
        raise InvalidLedgerRequest(f"{action.value} amount must be negative.")
    if action not in CHARGE_ACTIONS and delta < 0:
        raise InvalidLedgerRequest(f"{action.value} amount must be positive.")
    return key, action, delta


async def _read_balance(db: AsyncSession, account_id: str) -> Optional[int]:
    result = await db.execute(select(CreditAccount.balance).where(CreditAccount.user_id == account_id))
    balance = result.scalar_one_or_none()
    return None if balance is None else int(balance)


async def _find_entry(db: AsyncSession, idempotency_key: str) -> Optional[CreditLedger]:
    result = await db.execute(select(CreditLedger).where(CreditLedger.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


def _replayed_outcome(entry: CreditLedger) -> LedgerOutcome:
    return LedgerOutcome(
        success=True,
        new_balance=int(entry.balance_after),
        entry_id=entry.id,
        amount=int(entry.amount),
        replayed=True,
    )


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    balance = await _read_balance(db, user_id)
    if balance is None:
        raise AccountNotFound(user_id)
    return balance


async def apply_ledger_entry(
    db: AsyncSession,
    *,
    account_id: str,
    idempotency_key: str,
    action_type: Union[ActionType, str],
    amount: int,
    metadata: Optional[Dict[str, Any]] = None,
    reference_entry_id: Optional[str] = None,
) -> LedgerOutcome:
    """
    Check balance, append one entry and move the balance inside the caller's transaction.

    Nothing is committed here. Failed outcomes leave the session untouched;
    a lost unique-key race rolls the session back and returns the winner.
    """
    key, action, delta = _validate_request(idempotency_key, action_type, amount)

    existing = await _find_entry(db, key)
    if existing is not None:
        if existing.user_id != account_id:
            raise InvalidLedgerRequest("idempotency_key was already used by another account.")
        logger.info("Ledger replay account=%s key=%s entry=%s", account_id, key, existing.id)
        return _replayed_outcome(existing)

    stmt = (
        update(CreditAccount)
        .where(CreditAccount.user_id == account_id)
        .values(balance=CreditAccount.balance + delta, updated_at=func.now())
        .returning(CreditAccount.balance)
        .execution_options(synchronize_session=False)
    )
    if delta < 0:
        stmt = stmt.where(CreditAccount.balance + delta >= 0)
    result = await db.execute(stmt)
    new_balance = result.scalar_one_or_none()

    if new_balance is None:
        current = await _read_balance(db, account_id)
        if current is None:
            logger.error("Ledger write for unknown account=%s key=%s", account_id, key)
            return LedgerOutcome(success=False, new_balance=0, error=ACCOUNT_NOT_FOUND, amount=delta)
        logger.warning(
            "Insufficient balance account=%s key=%s required=%s available=%s",
            account_id,
            key,
            -delta,
            current,
        )
        return LedgerOutcome(success=False, new_balance=current, error=INSUFFICIENT_BALANCE, amount=delta)

    entry = CreditLedger(
        id=str(uuid.uuid4()),
        user_id=account_id,
        idempotency_key=key,
        action_type=action,
        amount=delta,
        balance_after=int(new_balance),
        metadata_json=dict(metadata or {}),
        reference_entry_id=reference_entry_id,
    )
    db.add(entry)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        winner = await _find_entry(db, key)
        if winner is None:
            raise
        logger.info("Ledger race resolved by replay account=%s key=%s", account_id, key)
        return _replayed_outcome(winner)

    logger.info(
        "Ledger %s account=%s amount=%s balance_after=%s key=%s",
        action.value,
        account_id,
        delta,
        new_balance,
        key,
    )
    return LedgerOutcome(success=True, new_balance=int(new_balance), entry_id=entry.id, amount=delta)


async def charge_or_refund(
    db: AsyncSession,
    *,
    account_id: str,
    idempotency_key: str,
    action_type: Union[ActionType, str],
    amount: int,
    metadata: Optional[Dict[str, Any]] = None,
    reference_entry_id: Optional[str] = None,
) -> LedgerOutcome:
    """Atomic LedgerRPC: one committed transaction per call."""
    outcome = await apply_ledger_entry(
        db,
        account_id=account_id,
        idempotency_key=idempotency_key,
        action_type=action_type,
        amount=amount,
        metadata=metadata,
        reference_entry_id=reference_entry_id,
    )
    if outcome.success and not outcome.replayed:
        await db.commit()
    else:
        await db.rollback()
    return outcome


async def ensure_credit_account(user_id: str, db: AsyncSession) -> int:
    """Create the account with its initial grant on first use and return the balance."""
    balance = await _read_balance(db, user_id)
    if balance is not None:
        return balance

    db.add(CreditAccount(user_id=user_id, balance=0))
    try:
        await db.flush()
    except IntegrityError:
        # Concurrent first request created it.
        await db.rollback()
        return await get_credit_balance(user_id, db)

    grant = max(int(settings.INITIAL_CREDIT_GRANT), 0)
    if grant > 0:
        await apply_ledger_entry(
            db,
            account_id=user_id,
            idempotency_key=f"grant:initial:{user_id}",
            action_type=ActionType.INITIAL_GRANT,
            amount=grant,
            metadata={"reason": "Initial credit grant"},
        )
    await db.commit()
    return await get_credit_balance(user_id, db)


async def add_credit_top_up(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    billing_reference: str,
    provider: str = "manual",
    reason: str = "Credit top-up",
) -> LedgerOutcome:
    grant = int(credits)
    if grant <= 0:
        raise InvalidLedgerRequest("credits must be greater than 0")
    outcome = await charge_or_refund(
        db,
        account_id=user_id,
        idempotency_key=f"topup:{provider}:{billing_reference}",
        action_type=ActionType.TOP_UP,
        amount=grant,
        metadata={"provider": provider, "billing_reference": billing_reference, "reason": reason},
    )
    if outcome.error == ACCOUNT_NOT_FOUND:
        raise AccountNotFound(user_id)
    return outcome


async def refund_ledger_entry(
    user_id: str,
    db: AsyncSession,
    *,
    entry_id: str,
    reason: str,
    commit: bool = True,
) -> LedgerOutcome:
    """
    Append a REFUND that exactly reverses one charge entry.

    The refund key is derived from the original entry id, so a charge can be
    refunded at most once. Refunding a search page charge also releases its
    fingerprints so they can be billed again.
    """
    result = await db.execute(select(CreditLedger).where(CreditLedger.id == entry_id))
    original = result.scalar_one_or_none()
    if original is None or original.user_id != user_id:
        raise LedgerEntryNotFound(entry_id)

    original_id = original.id
    original_action = ActionType(original.action_type)
    original_amount = int(original.amount)
    if original_action not in CHARGE_ACTIONS:
        raise RefundNotAllowed(
            "Only charge entries can be refunded.",
            details={"entry_id": original_id, "action_type": original_action.value},
        )

    outcome = await apply_ledger_entry(
        db,
        account_id=user_id,
        idempotency_key=f"refund:{original_id}",
        action_type=ActionType.REFUND,
        amount=-original_amount,
        metadata={
            "refunded_entry_id": original_id,
            "refunded_action_type": original_action.value,
            "reason": reason,
        },
        reference_entry_id=original_id,
    )
    if not outcome.success:
        await db.rollback()
        raise AccountNotFound(user_id)

    if not outcome.replayed and original_action == ActionType.SEARCH_PAGE_CHARGE:
        await release_entry_fingerprints(db, original_id)
    if commit and not outcome.replayed:
        await db.commit()
    return outcome


def serialize_ledger_entry(entry: CreditLedger) -> Dict[str, Any]:
    action = entry.action_type
    return {
        "id": entry.id,
        "idempotency_key": entry.idempotency_key,
        "action_type": action.value if isinstance(action, ActionType) else str(action),
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "metadata": entry.metadata_json or {},
        "reference_entry_id": entry.reference_entry_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def list_ledger_entries(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
    action_type: Optional[Union[ActionType, str]] = None,
) -> List[Dict[str, Any]]:
    query = select(CreditLedger).where(CreditLedger.user_id == user_id)
    if action_type is not None:
        query = query.where(CreditLedger.action_type == ActionType(action_type))
    result = await db.execute(
        query.order_by(CreditLedger.created_at.desc()).offset(max(int(offset), 0)).limit(max(int(limit), 1))
    )
    return [serialize_ledger_entry(entry) for entry in result.scalars().all()]


async def reconcile_credit_account(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Compare the stored balance against the sum of ledger entries."""
    balance = await get_credit_balance(user_id, db)
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.amount), 0)).where(CreditLedger.user_id == user_id)
    )
    ledger_total = int(result.scalar() or 0)
    return {
        "balance": balance,
        "ledger_total": ledger_total,
        "consistent": balance == ledger_total,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_credit_balance(user_id, db)
    return {
        "balance": balance,
        "costs": {
            "search_row": max(int(settings.CREDIT_COST_SEARCH_ROW), 0),
            "ai_enrich": max(int(settings.CREDIT_COST_AI_ENRICH), 0),
        },
        "recent_entries": await list_ledger_entries(user_id, db, limit=30),
    }
