"""Tests for the SQL generation store (SQLite via aiosqlite)."""

import pytest

from storyforge.contracts.errors import ErrorKind
from storyforge.contracts.models import (
    GenerationRecord,
    RequestStatus,
    ReviewAction,
    ReviewDecision,
)
from storyforge.persistence.store import InMemoryGenerationStore, SQLGenerationStore
from storyforge.quota.ledger import QuotaLedger

from conftest import Harness, ScriptedProvider, make_request

S = RequestStatus


@pytest.fixture
async def sql_store(tmp_path):
    store = SQLGenerationStore(f"sqlite+aiosqlite:///{tmp_path}/storyforge.db")
    await store.initialize()
    yield store
    await store.close()


class TestSQLGenerationStore:

    @pytest.mark.asyncio
    async def test_save_and_get_round_trip(self, sql_store):
        record = GenerationRecord(request=make_request(), fingerprint="abc")

        await sql_store.save(record)
        loaded = await sql_store.get(record.request_id)

        assert loaded == record
        assert await sql_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_save_updates_status(self, sql_store):
        record = GenerationRecord(request=make_request())
        await sql_store.save(record)

        record.status = S.VALIDATING
        await sql_store.save(record)

        assert (await sql_store.get(record.request_id)).status == S.VALIDATING
        assert [r.request_id for r in await sql_store.list_by_status([S.VALIDATING])] == [record.request_id]
        assert await sql_store.list_by_status([S.PENDING]) == []

    @pytest.mark.asyncio
    async def test_quota_accounts(self, sql_store, utc_clock):
        ledger = QuotaLedger(clock=utc_clock)
        ledger.try_reserve("parent-1")
        await sql_store.save_quota_account(ledger.snapshot("parent-1"))
        ledger.try_reserve("parent-1")
        await sql_store.save_quota_account(ledger.snapshot("parent-1"))

        accounts = await sql_store.load_quota_accounts()

        assert len(accounts) == 1
        assert accounts[0].daily_used == 2


class TestSQLLifecycle:
    """A full request driven through the orchestrator on the SQL store."""

    @pytest.mark.asyncio
    async def test_attempts_and_decision_rows(self, sql_store):
        a = ScriptedProvider("a", [ErrorKind.TRANSIENT])
        b = ScriptedProvider("b")
        h = Harness([a, b], store=sql_store)

        result = await h.orchestrator.submit(make_request())
        await h.settle(result.request_id)
        await h.orchestrator.decide(
            result.request_id,
            ReviewDecision(action=ReviewAction.APPROVE, reviewer_id="parent-1", notes="lovely"),
        )

        attempts = await sql_store.attempt_rows(result.request_id)
        decision = await sql_store.decision_row(result.request_id)
        stored = await sql_store.get(result.request_id)

        assert [(r.sequence, r.provider_id, r.outcome) for r in attempts] == [
            (1, "a", "failure"),
            (2, "b", "success"),
        ]
        assert attempts[0].error_kind == "transient"
        assert decision.action == "approve"
        assert decision.notes == "lovely"
        assert stored.status == S.APPROVED
        assert stored.artifact is not None

    @pytest.mark.asyncio
    async def test_quota_survives_restart(self, sql_store):
        h = Harness([ScriptedProvider("a")], store=sql_store)
        result = await h.orchestrator.submit(make_request())
        await h.settle(result.request_id)

        restored = QuotaLedger(accounts=await sql_store.load_quota_accounts())

        assert restored.view("parent-1").daily.used == 1


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_records_are_copies(self):
        store = InMemoryGenerationStore()
        record = GenerationRecord(request=make_request())
        await store.save(record)

        record.status = S.FAILED
        loaded = await store.get(record.request_id)

        assert loaded.status == S.PENDING
