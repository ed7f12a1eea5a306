import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import ActionType, CreditLedger
from models.search_charged_row import SearchChargedRow
from models.search_session import SearchSession
from services import consumption
from services.credit_errors import AccountNotFound, ChargeInProgress, TransientStoreFailure
from services.credits import get_credit_balance, refund_ledger_entry
from services.fingerprint_dedup import purge_stale_search_sessions
from services.search_key import derive_search_key


USER_ID = "search-user"
STEEL_KEY = derive_search_key({"category": "importer", "keyword": "steel"})
COPPER_KEY = derive_search_key({"category": "importer", "keyword": "copper"})


async def _charge(db, fingerprints, page=1, search_key=STEEL_KEY):
    return await consumption.charge_search_page(
        db,
        account_id=USER_ID,
        search_key=search_key,
        page_number=page,
        row_fingerprints=fingerprints,
    )


async def _page_charges(db):
    result = await db.execute(
        select(CreditLedger).where(
            CreditLedger.user_id == USER_ID,
            CreditLedger.action_type == ActionType.SEARCH_PAGE_CHARGE,
        )
    )
    return result.scalars().all()


@pytest.mark.asyncio
async def test_rows_are_billed_once_across_pages_and_revisits(db_session, open_account):
    await open_account(USER_ID)

    first = await _charge(db_session, ["bl-a", "bl-b", "bl-c"])
    assert first.success
    assert first.charged_count == 3
    assert first.new_balance == 97

    revisit = await _charge(db_session, ["bl-a", "bl-b", "bl-c"])
    assert revisit.success
    assert revisit.charged_count == 0
    assert revisit.new_balance == 97

    # Page 2 overlaps page 1 on one row.
    second = await _charge(db_session, ["bl-c", "bl-d", "bl-e"], page=2)
    assert second.charged_count == 2
    assert second.new_balance == 95

    back_to_first = await _charge(db_session, ["bl-a", "bl-b", "bl-c"])
    assert back_to_first.charged_count == 0
    assert await get_credit_balance(USER_ID, db_session) == 95
    assert len(await _page_charges(db_session)) == 2


@pytest.mark.asyncio
async def test_duplicates_and_blanks_within_a_page_are_billed_once(db_session, open_account):
    await open_account(USER_ID)
    result = await _charge(db_session, ["bl-a", "bl-a", " ", "bl-b"])
    assert result.charged_count == 2
    assert result.new_balance == 98


@pytest.mark.asyncio
async def test_changing_search_key_starts_a_fresh_billing_scope(db_session, open_account):
    await open_account(USER_ID)
    await _charge(db_session, ["bl-a", "bl-b"])

    copper = await _charge(db_session, ["bl-a"], search_key=COPPER_KEY)
    assert copper.charged_count == 1

    # The steel session was retired when the copper search started.
    steel_again = await _charge(db_session, ["bl-a", "bl-b"])
    assert steel_again.charged_count == 2
    assert steel_again.new_balance == 95

    result = await db_session.execute(
        select(SearchSession).where(SearchSession.user_id == USER_ID, SearchSession.is_active.is_(True))
    )
    active = result.scalars().all()
    assert len(active) == 1
    assert active[0].search_key == STEEL_KEY


@pytest.mark.asyncio
async def test_insufficient_balance_blocks_page_without_touching_dedup_set(db_session, open_account, monkeypatch):
    monkeypatch.setattr(settings, "INITIAL_CREDIT_GRANT", 1)
    await open_account(USER_ID)

    blocked = await _charge(db_session, ["bl-x", "bl-y"])
    assert not blocked.success
    assert blocked.error == "INSUFFICIENT_BALANCE"
    assert blocked.required == 2
    assert blocked.new_balance == 1
    assert await _page_charges(db_session) == []

    rows = await db_session.execute(select(SearchChargedRow))
    assert rows.scalars().all() == []

    single = await _charge(db_session, ["bl-x"])
    assert single.success
    assert single.charged_count == 1
    assert single.new_balance == 0


@pytest.mark.asyncio
async def test_empty_page_is_free_and_writes_no_entry(db_session, open_account):
    await open_account(USER_ID)
    result = await _charge(db_session, [])
    assert result.success
    assert result.charged_count == 0
    assert result.new_balance == 100
    assert await _page_charges(db_session) == []


@pytest.mark.asyncio
async def test_unknown_account_is_a_hard_error(db_session):
    with pytest.raises(AccountNotFound):
        await _charge(db_session, ["bl-a"])


@pytest.mark.asyncio
async def test_refunded_page_rows_can_be_billed_again(db_session, open_account):
    await open_account(USER_ID)
    charged = await _charge(db_session, ["bl-a", "bl-b"])

    refund = await refund_ledger_entry(USER_ID, db_session, entry_id=charged.entry_id, reason="page failed to render")
    assert refund.new_balance == 100

    recharged = await _charge(db_session, ["bl-a", "bl-b"])
    assert recharged.charged_count == 2
    assert recharged.entry_id != charged.entry_id
    assert recharged.new_balance == 98


@pytest.mark.asyncio
async def test_transient_store_errors_are_retried(db_session, open_account, monkeypatch):
    await open_account(USER_ID)
    monkeypatch.setattr(settings, "LEDGER_RETRY_BACKOFF_SECONDS", 0)

    real_filter = consumption.filter_unbilled
    calls = {"count": 0}

    async def flaky_filter(db, session, candidates):
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return await real_filter(db, session, candidates)

    monkeypatch.setattr(consumption, "filter_unbilled", flaky_filter)
    result = await _charge(db_session, ["bl-a"])
    assert result.charged_count == 1
    assert calls["count"] == 2

    async def broken_filter(db, session, candidates):
        raise OperationalError("SELECT", {}, Exception("server closed the connection"))

    monkeypatch.setattr(consumption, "filter_unbilled", broken_filter)
    with pytest.raises(TransientStoreFailure):
        await _charge(db_session, ["bl-b"])
    assert await get_credit_balance(USER_ID, db_session) == 99


@pytest.mark.asyncio
async def test_purge_removes_idle_sessions_and_their_rows(db_session, open_account):
    await open_account(USER_ID)
    await _charge(db_session, ["bl-a", "bl-b"])

    stale_at = datetime.now(timezone.utc) - timedelta(hours=48)
    result = await db_session.execute(select(SearchSession).where(SearchSession.user_id == USER_ID))
    for session in result.scalars().all():
        session.updated_at = stale_at
    await db_session.commit()

    assert await purge_stale_search_sessions(db_session, older_than_hours=24) == 1
    rows = await db_session.execute(select(SearchChargedRow))
    assert rows.scalars().all() == []
    # Ledger history is kept.
    assert len(await _page_charges(db_session)) == 1


@pytest.mark.asyncio
async def test_replayed_page_charge_bills_nothing_and_restores_dedup_rows(db_session, open_account):
    await open_account(USER_ID)
    first = await _charge(db_session, ["bl-a", "bl-b"])
    assert first.new_balance == 98

    # Dedup rows gone while the ledger entry for the page still exists.
    await db_session.execute(delete(SearchChargedRow))
    await db_session.commit()

    replay = await _charge(db_session, ["bl-a", "bl-b"])
    assert replay.success
    assert replay.replayed
    assert replay.charged_count == 0
    assert replay.new_balance == 98
    assert replay.entry_id == first.entry_id

    rows = await db_session.execute(select(SearchChargedRow.row_fingerprint))
    assert sorted(rows.scalars().all()) == ["bl-a", "bl-b"]

    again = await _charge(db_session, ["bl-a", "bl-b"])
    assert again.charged_count == 0
    assert not again.replayed
    assert await get_credit_balance(USER_ID, db_session) == 98
    assert len(await _page_charges(db_session)) == 1


@pytest.mark.asyncio
async def test_overlapping_page_charges_for_one_account_fail_fast(db_session, open_account, monkeypatch):
    await open_account(USER_ID)
    other_sessions = async_sessionmaker(db_session.bind, class_=AsyncSession, expire_on_commit=False)

    entered = asyncio.Event()
    release = asyncio.Event()
    real_filter = consumption.filter_unbilled

    async def held_filter(db, session, candidates):
        if not entered.is_set():
            entered.set()
            await release.wait()
        return await real_filter(db, session, candidates)

    monkeypatch.setattr(consumption, "filter_unbilled", held_filter)

    async def overlapping_charge():
        await entered.wait()
        try:
            async with other_sessions() as other:
                return await _charge(other, ["bl-a", "bl-b"])
        finally:
            release.set()

    first, second = await asyncio.gather(
        _charge(db_session, ["bl-a", "bl-b"]),
        overlapping_charge(),
        return_exceptions=True,
    )
    assert first.charged_count == 2
    assert isinstance(second, ChargeInProgress)
    assert len(await _page_charges(db_session)) == 1
    assert await get_credit_balance(USER_ID, db_session) == 98
