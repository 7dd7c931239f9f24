"""Tests for the confirmation correlation table."""

import asyncio

import pytest

from runtime.confirmations import ConfirmationTable, Outcome
from runtime.registry import CancellationToken


@pytest.mark.asyncio
async def test_resolve_approves_waiter():
    table = ConfirmationTable()
    pending = table.open("t1", "write_file", "Create file /a", {"path": "/a"})
    assert pending.request_payload()["id"] == pending.id

    waiter = asyncio.ensure_future(table.wait(pending))
    await asyncio.sleep(0)
    assert table.resolve(pending.id, approved=True, remember=True)
    decision = await waiter
    assert decision.approved
    assert decision.remember
    assert len(table) == 0


@pytest.mark.asyncio
async def test_duplicate_and_unknown_answers_are_rejected():
    table = ConfirmationTable()
    pending = table.open("t1", "run_command", "Run ls")
    assert table.resolve(pending.id, approved=False)
    assert not table.resolve(pending.id, approved=True)
    assert not table.resolve("confirm-unknown", approved=True)
    assert (await table.wait(pending)).outcome is Outcome.DENIED


@pytest.mark.asyncio
async def test_remember_is_ignored_on_denial():
    table = ConfirmationTable()
    pending = table.open("t1", "write_file", "x")
    table.resolve(pending.id, approved=False, remember=True)
    assert not pending.future.result().remember


@pytest.mark.asyncio
async def test_timeout_expires_request():
    table = ConfirmationTable()
    pending = table.open("t1", "write_file", "x")
    decision = await table.wait(pending, timeout=0.05)
    assert decision.outcome is Outcome.EXPIRED
    assert not decision.approved
    assert not table.resolve(pending.id, approved=True)


@pytest.mark.asyncio
async def test_cancel_denies_waiting_request():
    table = ConfirmationTable()
    token = CancellationToken()
    pending = table.open("t1", "run_command", "x")
    waiter = asyncio.ensure_future(table.wait(pending, cancel=token))
    await asyncio.sleep(0)
    token.cancel()
    assert (await waiter).outcome is Outcome.DENIED


@pytest.mark.asyncio
async def test_already_cancelled_denies_immediately():
    table = ConfirmationTable()
    token = CancellationToken()
    token.cancel()
    pending = table.open("t1", "run_command", "x")
    assert (await table.wait(pending, cancel=token)).outcome is Outcome.DENIED


@pytest.mark.asyncio
async def test_deny_all_scoped_to_task():
    table = ConfirmationTable()
    a = table.open("t1", "write_file", "a")
    b = table.open("t2", "write_file", "b")
    assert table.deny_all("t1") == 1
    assert a.future.done()
    assert not b.future.done()
    assert table.pending_for("t2") == [b]
    assert table.deny_all() == 1
