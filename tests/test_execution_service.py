"""
Tests for the execution orchestrator and its audit trail
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import ACCOUNT_ID, FakeAdsClient
from convertos.db.models import AgentExecution, MetaAdAccount
from convertos.exceptions import PersistenceError, StaleDataError, ValidationError
from convertos.services.execution_service import ExecutionOrchestrator, new_batch_id
from convertos.services.recommendation_engine import AgentService


def _pause(ad_id: str, **extra) -> dict:
    return {
        "id": f"pause-fatigue-{ad_id}",
        "type": "pause_ad",
        "entity_level": "ad",
        "entity_id": ad_id,
        "reason": "Frequency fatigue detected",
        "risk_level": "medium",
        **extra,
    }


def _orchestrator(db: AsyncSession, ads: FakeAdsClient) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(db, ads, AgentService(db, max_data_age=timedelta(minutes=60)))


async def _audits(db: AsyncSession):
    result = await db.execute(select(AgentExecution).order_by(AgentExecution.executed_at))
    return result.scalars().all()


async def _audit_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count()).select_from(AgentExecution))).scalar_one()


def test_batch_ids_are_unique():
    first, second = new_batch_id(), new_batch_id()
    assert first.startswith("batch-")
    assert first != second


# ============ Batch preconditions ============

@pytest.mark.asyncio
async def test_approver_required(db_session: AsyncSession, synced_account):
    with pytest.raises(ValidationError) as exc:
        await _orchestrator(db_session, FakeAdsClient()).execute(ACCOUNT_ID, [_pause("a1")], None)
    assert exc.value.message == "approvedBy required"


@pytest.mark.asyncio
async def test_empty_batch_rejected(db_session: AsyncSession, synced_account):
    with pytest.raises(ValidationError):
        await _orchestrator(db_session, FakeAdsClient()).execute(ACCOUNT_ID, [], "ops@acme.test")


@pytest.mark.asyncio
async def test_oversized_batch_rejected_before_any_work(db_session: AsyncSession, synced_account):
    ads = FakeAdsClient()
    recs = [_pause(f"a{i}") for i in range(6)]

    with pytest.raises(ValidationError) as exc:
        await _orchestrator(db_session, ads).execute(ACCOUNT_ID, recs, "ops@acme.test")

    assert exc.value.message == "Max 5 changes per batch"
    assert ads.calls == []
    assert await _audit_count(db_session) == 0


@pytest.mark.asyncio
async def test_stale_data_blocks_whole_batch(db_session: AsyncSession):
    synced = datetime.utcnow() - timedelta(hours=3)
    db_session.add(MetaAdAccount(account_id=ACCOUNT_ID, name="Acme", last_synced_at=synced))
    await db_session.commit()
    ads = FakeAdsClient()

    with pytest.raises(StaleDataError) as exc:
        await _orchestrator(db_session, ads).execute(ACCOUNT_ID, [_pause("a1")], "ops@acme.test")

    body = exc.value.to_dict()
    assert exc.value.status_code == 412
    assert body["data_freshness"] == "stale"
    assert body["last_synced"] == synced.isoformat()
    assert body["minutes_since_sync"] >= 180
    assert "Sync required before execution" in body["error"]
    assert ads.calls == []
    assert await _audit_count(db_session) == 0


@pytest.mark.asyncio
async def test_never_synced_account_is_stale(db_session: AsyncSession):
    with pytest.raises(StaleDataError) as exc:
        await _orchestrator(db_session, FakeAdsClient()).execute(ACCOUNT_ID, [_pause("a1")], "ops@acme.test")

    assert "never been synced" in exc.value.message
    assert exc.value.to_dict()["last_synced"] is None


# ============ Per-item execution ============

@pytest.mark.asyncio
async def test_failures_are_isolated_and_every_item_audited(db_session: AsyncSession, synced_account):
    ads = FakeAdsClient(fail_ids=["a1"])

    report = await _orchestrator(db_session, ads).execute(
        ACCOUNT_ID, [_pause("a1"), _pause("a2")], "ops@acme.test"
    )

    assert report.executed == 1
    assert [r.status for r in report.results] == ["failed", "success"]
    assert report.results[0].error == "(#100) Invalid parameter"
    assert report.results[0].error_code == "ExternalServiceError"
    assert report.results[1].error_code is None
    assert ads.states["a2"]["status"] == "PAUSED"

    audits = await _audits(db_session)
    assert len(audits) == 2
    assert {a.batch_id for a in audits} == {report.batch_id}
    by_entity = {a.entity_id: a for a in audits}

    failed = by_entity["a1"]
    assert failed.status == "failed"
    assert failed.execution_error == "(#100) Invalid parameter"
    assert failed.approved_by == "ops@acme.test"

    done = by_entity["a2"]
    assert done.status == "executed"
    assert done.execution_error is None
    assert done.risk_level == "medium"
    assert done.before_state["status"] == "ACTIVE"
    assert done.before_state["_metadata"]["batch_id"] == report.batch_id
    assert done.after_state["effective_status"] == "PAUSED"
    meta = done.after_state["_metadata"]
    assert meta["batch_id"] == report.batch_id
    assert meta["request_payload"]["type"] == "pause_ad"
    assert meta["response"]["success"] is True
    assert meta["latency_ms"] >= 0


@pytest.mark.asyncio
async def test_invalid_items_are_audited_without_platform_calls(db_session: AsyncSession, synced_account):
    ads = FakeAdsClient()
    recs = [
        {"id": "rec-x", "type": "delete_campaign", "entity_id": "a1"},
        {"id": "rec-y", "type": "pause_ad"},
    ]

    report = await _orchestrator(db_session, ads).execute(ACCOUNT_ID, recs, "ops@acme.test")

    assert report.executed == 0
    assert report.results[0].error == "Invalid type: delete_campaign"
    assert report.results[1].error == "entity_id required"
    assert {r.error_code for r in report.results} == {"ValidationError"}
    assert ads.calls == []

    audits = await _audits(db_session)
    assert sorted(a.execution_type for a in audits) == ["delete_campaign", "pause_ad"]
    assert all(a.status == "failed" for a in audits)
    assert all(a.before_state is None and a.after_state is None for a in audits)


@pytest.mark.asyncio
async def test_unsupported_creation_fails_but_is_audited(db_session: AsyncSession, synced_account):
    ads = FakeAdsClient()
    rec = {
        "id": "create-ad-s1",
        "type": "create_ad",
        "entity_level": "ad",
        "adset_id": "s1",
        "risk_level": "medium",
        "creative_variations": [{"angle": "benefit", "headline": "Decks"}],
    }

    report = await _orchestrator(db_session, ads).execute(ACCOUNT_ID, [rec], "ops@acme.test")

    assert report.executed == 0
    assert ads.calls == [("create_ad", "s1")]
    audit = (await _audits(db_session))[0]
    assert audit.execution_type == "create_ad"
    assert audit.entity_id is None
    assert audit.status == "failed"


@pytest.mark.asyncio
async def test_report_shape(db_session: AsyncSession, synced_account):
    report = await _orchestrator(db_session, FakeAdsClient()).execute(ACCOUNT_ID, [_pause("a2")], "ops@acme.test")

    body = report.to_dict()
    assert body["success"] is True
    assert body["executed"] == 1
    assert body["batch_id"] == report.batch_id
    assert body["results"][0]["recommendation_id"] == "pause-fatigue-a2"
    assert body["results"][0]["status"] == "success"
    assert "error" not in body["results"][0]


@pytest.mark.asyncio
async def test_audit_write_failure_is_fatal(db_session: AsyncSession, synced_account, monkeypatch):
    orchestrator = _orchestrator(db_session, FakeAdsClient())
    await orchestrator.agent.get_or_create_config(ACCOUNT_ID)

    async def broken_commit():
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(db_session, "commit", broken_commit)

    with pytest.raises(PersistenceError):
        await orchestrator.execute(ACCOUNT_ID, [_pause("a2")], "ops@acme.test")


# ============ Listing ============

@pytest.mark.asyncio
async def test_list_executions_filters_by_account(db_session: AsyncSession, synced_account):
    orchestrator = _orchestrator(db_session, FakeAdsClient())
    await orchestrator.execute(ACCOUNT_ID, [_pause("a1"), _pause("a2")], "ops@acme.test")
    db_session.add(AgentExecution(
        account_id="act_other", batch_id="batch-0-000000", execution_type="pause_ad",
        approved_by="someone", status="executed",
    ))
    await db_session.commit()

    rows = await orchestrator.list_executions(ACCOUNT_ID)
    assert len(rows) == 2
    assert {r["entity_id"] for r in rows} == {"a1", "a2"}
    assert all(r["account_id"] == ACCOUNT_ID for r in rows)

    assert len(await orchestrator.list_executions(limit=1)) == 1
    assert len(await orchestrator.list_executions()) == 3
