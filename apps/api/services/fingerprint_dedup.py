"""Per-search-session dedup of billed result-row fingerprints.

The billed set is persisted server-side and keyed by the account's active
search session, so a client reload or a forged request cannot reset it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.search_charged_row import SearchChargedRow
from models.search_session import SearchSession

logger = logging.getLogger(__name__)


def normalize_fingerprints(candidates: Iterable[str]) -> List[str]:
    """Strip, drop blanks and de-duplicate while keeping first-seen order."""
    seen = set()
    ordered: List[str] = []
    for raw in candidates or []:
        token = str(raw or "").strip()
        if not token or token in seen:
            continue
        seen.add(token)
        ordered.append(token)
    return ordered


async def activate_search_session(db: AsyncSession, user_id: str, search_key: str) -> SearchSession:
    """
    Return the account's active session for ``search_key``.

    A different key retires the previous session wholesale: its rows stay for
    audit but are never consulted for billing again.
    """
    result = await db.execute(
        select(SearchSession)
        .where(SearchSession.user_id == user_id, SearchSession.is_active.is_(True))
        .order_by(SearchSession.updated_at.desc())
    )
    active = result.scalars().all()

    current = None
    for session in active:
        if current is None and session.search_key == search_key:
            current = session
            continue
        session.is_active = False

    if current is not None:
        current.updated_at = datetime.now(timezone.utc)
        await db.flush()
        return current

    if active:
        logger.info("Search session replaced user=%s retired=%s", user_id, len(active))
    current = SearchSession(user_id=user_id, search_key=search_key, is_active=True)
    db.add(current)
    await db.flush()
    return current


async def filter_unbilled(db: AsyncSession, session: SearchSession, candidates: Sequence[str]) -> List[str]:
    """Return candidates that were not yet billed under ``session``."""
    fingerprints = normalize_fingerprints(candidates)
    if not fingerprints:
        return []
    result = await db.execute(
        select(SearchChargedRow.row_fingerprint).where(
            SearchChargedRow.session_id == session.id,
            SearchChargedRow.row_fingerprint.in_(fingerprints),
        )
    )
    billed = set(result.scalars().all())
    return [fingerprint for fingerprint in fingerprints if fingerprint not in billed]


async def mark_billed(
    db: AsyncSession,
    session: SearchSession,
    fingerprints: Sequence[str],
    ledger_entry_id: Optional[str],
) -> None:
    """Merge newly charged fingerprints into the session set (no commit)."""
    db.add_all(
        [
            SearchChargedRow(
                session_id=session.id,
                user_id=session.user_id,
                row_fingerprint=fingerprint,
                ledger_entry_id=ledger_entry_id,
            )
            for fingerprint in fingerprints
        ]
    )
    await db.flush()


async def release_entry_fingerprints(db: AsyncSession, ledger_entry_id: str) -> int:
    """Forget fingerprints billed by a refunded entry so they can be billed again."""
    result = await db.execute(
        delete(SearchChargedRow)
        .where(SearchChargedRow.ledger_entry_id == ledger_entry_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def purge_stale_search_sessions(db: AsyncSession, older_than_hours: int) -> int:
    """Delete retired or idle sessions (and their rows) past the retention window."""
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max(int(older_than_hours), 1))
    result = await db.execute(select(SearchSession.id).where(SearchSession.updated_at < cutoff))
    stale_ids = list(result.scalars().all())
    if not stale_ids:
        return 0

    await db.execute(
        delete(SearchChargedRow)
        .where(SearchChargedRow.session_id.in_(stale_ids))
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(SearchSession).where(SearchSession.id.in_(stale_ids)).execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Purged %s stale search sessions older than %s", len(stale_ids), cutoff.isoformat())
    return len(stale_ids)
