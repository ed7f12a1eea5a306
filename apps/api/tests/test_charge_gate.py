import asyncio

import pytest

from services.charge_gate import ChargeGate
from services.credit_errors import ChargeInProgress


@pytest.mark.asyncio
async def test_concurrent_charge_for_same_scope_fails_fast():
    gate = ChargeGate()
    entered = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with gate.exclusive("search:acct-1"):
            entered.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await entered.wait()
    assert gate.is_held("search:acct-1")

    with pytest.raises(ChargeInProgress) as exc_info:
        async with gate.exclusive("search:acct-1"):
            pass
    assert exc_info.value.to_dict()["error"] == "CHARGE_IN_PROGRESS"

    # Other scopes share nothing.
    async with gate.exclusive("search:acct-2"):
        assert gate.is_held("search:acct-2")

    release.set()
    await task
    assert not gate.is_held("search:acct-1")


@pytest.mark.asyncio
async def test_with_exclusive_charge_returns_result_and_releases_on_error():
    gate = ChargeGate()

    async def charge():
        return {"charged": 3}

    assert await gate.with_exclusive_charge("enrichment:run-1", charge) == {"charged": 3}

    async def explode():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await gate.with_exclusive_charge("enrichment:run-1", explode)
    assert not gate.is_held("enrichment:run-1")
    assert await gate.with_exclusive_charge("enrichment:run-1", charge) == {"charged": 3}


@pytest.mark.asyncio
async def test_unreachable_redis_falls_back_to_local_lock():
    gate = ChargeGate(redis_url="redis://127.0.0.1:1/0")

    async with gate.exclusive("search:acct-9"):
        assert gate.is_held("search:acct-9")
        with pytest.raises(ChargeInProgress):
            async with gate.exclusive("search:acct-9"):
                pass
    assert not gate.is_held("search:acct-9")
