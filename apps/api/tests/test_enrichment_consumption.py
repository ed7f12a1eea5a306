import pytest
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import ActionType, CreditLedger
from models.enrichment_run import EnrichmentRun, EnrichmentStatus
from services.consumption import (
    charge_enrichment,
    refund_enrichment_run,
    useful_enrichment_fields,
)
from services.credit_errors import DownstreamWorkFailure, RefundNotAllowed, UpstreamProviderFailure
from services.credits import get_credit_balance
from services.enrichment_provider import EnrichmentResult, parse_enrichment_payload


USER_ID = "enrich-user"
EXISTING = {"website_url": "https://acme.example", "email_address": None, "phone_number_e164": ""}


def _useful_result() -> EnrichmentResult:
    return EnrichmentResult(
        fields={"website_url": "https://acme.example", "email_address": "sales@acme.example"},
        evidence={
            "email_address": [
                {"source_type": "website", "source_url": "https://acme.example/contact", "snippet": "sales@"}
            ]
        },
        summary="Contact page lists a sales mailbox. Reference only.",
        confidence_level="High",
    )


class CountingProvider:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


async def _enrich_entries(db):
    result = await db.execute(
        select(CreditLedger).where(CreditLedger.user_id == USER_ID).order_by(CreditLedger.created_at.asc())
    )
    return [entry for entry in result.scalars().all() if entry.action_type != ActionType.INITIAL_GRANT]


async def _run(db, run_id, provider, deliver=None):
    return await charge_enrichment(
        db,
        account_id=USER_ID,
        target_id="buyer-42",
        run_id=run_id,
        operation=provider,
        existing_fields=EXISTING,
        deliver=deliver,
    )


def test_useful_fields_require_previously_empty_value_with_evidence():
    result = EnrichmentResult(
        fields={
            "website_url": "https://other.example",
            "email_address": "sales@acme.example",
            "phone_number_e164": "+84123456789",
        },
        evidence={
            "website_url": [{"source_type": "website", "source_url": "https://other.example", "snippet": ""}],
            "email_address": [{"source_type": "website", "source_url": "https://acme.example", "snippet": ""}],
        },
    )
    # website_url was already known; phone has no evidence.
    assert useful_enrichment_fields(EXISTING, result) == ["email_address"]


def test_parse_payload_drops_placeholder_values_and_unknown_confidence():
    parsed = parse_enrichment_payload(
        {
            "website_url": "null",
            "email_address": " sales@acme.example ",
            "confidence_level": "certain",
            "evidence": {"email_address": [{"source_url": "https://acme.example"}], "bogus": [{"snippet": "x"}]},
        }
    )
    assert parsed.fields["website_url"] is None
    assert parsed.fields["email_address"] == "sales@acme.example"
    assert parsed.confidence_level == "Low"
    assert list(parsed.evidence) == ["email_address"]


@pytest.mark.asyncio
async def test_useful_result_is_charged_exactly_once_per_run(db_session, open_account):
    await open_account(USER_ID)
    provider = CountingProvider(result=_useful_result())

    first = await _run(db_session, "run-1", provider)
    assert first.success
    assert first.status == "CHARGED"
    assert first.charged
    assert first.filled_fields == ["email_address"]
    assert first.new_balance == 95

    replay = await _run(db_session, "run-1", provider)
    assert replay.replayed
    assert replay.status == "CHARGED"
    assert replay.entry_id == first.entry_id
    assert provider.calls == 1
    assert await get_credit_balance(USER_ID, db_session) == 95

    entries = await _enrich_entries(db_session)
    assert [(entry.action_type, entry.amount, entry.idempotency_key) for entry in entries] == [
        (ActionType.AI_ENRICH_CHARGE, -5, "enrich:run-1")
    ]


@pytest.mark.asyncio
async def test_result_without_new_data_is_free(db_session, open_account):
    await open_account(USER_ID)
    unhelpful = EnrichmentResult(
        fields={"website_url": "https://acme.example", "email_address": "guess@acme.example"},
        evidence={},
    )

    result = await _run(db_session, "run-free", CountingProvider(result=unhelpful))
    assert result.success
    assert result.status == "SKIPPED"
    assert not result.charged
    assert result.new_balance == 100
    assert await _enrich_entries(db_session) == []

    run = await db_session.get(EnrichmentRun, "run-free")
    assert run.status == EnrichmentStatus.SKIPPED
    assert run.output_json["email_address"] == "guess@acme.example"


@pytest.mark.asyncio
async def test_provider_failure_is_not_charged_and_run_can_retry(db_session, open_account):
    await open_account(USER_ID)

    with pytest.raises(UpstreamProviderFailure):
        await _run(db_session, "run-flaky", CountingProvider(error=RuntimeError("timeout")))
    assert await get_credit_balance(USER_ID, db_session) == 100
    assert await _enrich_entries(db_session) == []
    run = await db_session.get(EnrichmentRun, "run-flaky")
    assert run.status == EnrichmentStatus.FAILED
    assert run.error_message == "timeout"

    retried = await _run(db_session, "run-flaky", CountingProvider(result=_useful_result()))
    assert retried.status == "CHARGED"
    assert retried.new_balance == 95


@pytest.mark.asyncio
async def test_delivery_failure_after_charge_is_refunded(db_session, open_account):
    await open_account(USER_ID)

    async def broken_delivery(result):
        raise RuntimeError("CRM write failed")

    with pytest.raises(DownstreamWorkFailure) as exc_info:
        await _run(db_session, "run-deliver", CountingProvider(result=_useful_result()), deliver=broken_delivery)

    assert await get_credit_balance(USER_ID, db_session) == 100
    entries = await _enrich_entries(db_session)
    assert [entry.action_type for entry in entries] == [ActionType.AI_ENRICH_CHARGE, ActionType.REFUND]
    assert entries[1].reference_entry_id == entries[0].id
    assert exc_info.value.details["refund_entry_id"] == entries[1].id

    run = await db_session.get(EnrichmentRun, "run-deliver")
    assert run.status == EnrichmentStatus.REFUNDED
    assert run.refund_entry_id == entries[1].id

    replay = await _run(db_session, "run-deliver", CountingProvider(result=_useful_result()))
    assert replay.replayed
    assert replay.status == "REFUNDED"
    assert replay.charged is False
    assert replay.new_balance == 100


@pytest.mark.asyncio
async def test_low_balance_blocks_before_calling_provider(db_session, open_account, monkeypatch):
    monkeypatch.setattr(settings, "INITIAL_CREDIT_GRANT", 3)
    await open_account(USER_ID)
    provider = CountingProvider(result=_useful_result())

    result = await _run(db_session, "run-poor", provider)
    assert not result.success
    assert result.error == "INSUFFICIENT_BALANCE"
    assert result.status == "FAILED"
    assert provider.calls == 0
    assert result.new_balance == 3


@pytest.mark.asyncio
async def test_refund_enrichment_run_is_idempotent(db_session, open_account):
    await open_account(USER_ID)
    await _run(db_session, "run-refund", CountingProvider(result=_useful_result()))

    refunded = await refund_enrichment_run(db_session, account_id=USER_ID, run_id="run-refund")
    assert refunded.status == "REFUNDED"
    assert refunded.charged is False
    assert refunded.new_balance == 100
    assert not refunded.replayed

    again = await refund_enrichment_run(db_session, account_id=USER_ID, run_id="run-refund")
    assert again.replayed
    assert again.charged is False
    assert again.refund_entry_id == refunded.refund_entry_id
    assert await get_credit_balance(USER_ID, db_session) == 100

    await _run(
        db_session,
        "run-skipped",
        CountingProvider(result=EnrichmentResult(fields={}, evidence={})),
    )
    with pytest.raises(RefundNotAllowed):
        await refund_enrichment_run(db_session, account_id=USER_ID, run_id="run-skipped")
