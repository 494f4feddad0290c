"""
Execution Orchestrator — applies operator-approved recommendations.

Batch preconditions are checked once, before anything runs:
  1. approver present, batch non-empty and within max_changes_per_batch
  2. account data synced within max_data_age (never synced is stale)

Items then run sequentially. Each item is validated, its entity state is
read, the action is dispatched, and the resulting state is read back. Any
failure is recorded on that item only. Every item, including ones that
fail validation, gets exactly one AgentExecution audit row.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from convertos.core.structured_logging import bind_context, executor_log
from convertos.db.models import AgentExecution, ExecutionStatus
from convertos.exceptions import (
    ConvertOSError,
    ExternalServiceError,
    PersistenceError,
    StaleDataError,
    ValidationError,
)
from convertos.services.ads_platform import MetaAdsClient, PlatformResponse
from convertos.services.recommendation_engine import AgentService

ALLOWED_TYPES = (
    "pause_ad",
    "activate_ad",
    "modify_copy",
    "create_ad",
    "create_adset",
    "create_campaign",
    "create_audience",
    "create_form",
)

REQUIRED_FIELDS = {
    "pause_ad": ("entity_id",),
    "activate_ad": ("entity_id",),
    "modify_copy": ("entity_id",),
    "create_ad": ("adset_id",),
    "create_adset": ("campaign_id",),
}

# Types whose effect is visible on a fresh read of the entity.
REREAD_AFTER = ("pause_ad", "activate_ad")


def new_batch_id() -> str:
    return f"batch-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


@dataclass
class ItemResult:
    recommendation_id: Optional[str]
    status: str  # success | failed
    entity_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    platform_response: Optional[Dict[str, Any]] = None
    latency_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "recommendation_id": self.recommendation_id,
            "status": self.status,
            "entity_id": self.entity_id,
        }
        if self.error is not None:
            out["error"] = self.error
            if self.error_code is not None:
                out["error_code"] = self.error_code
        if self.platform_response is not None:
            out["platform_response"] = self.platform_response
        if self.latency_ms is not None:
            out["latency_ms"] = self.latency_ms
        return out


@dataclass
class ExecutionReport:
    batch_id: str
    results: List[ItemResult] = field(default_factory=list)

    @property
    def executed(self) -> int:
        return sum(1 for r in self.results if r.status == "success")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "executed": self.executed,
            "batch_id": self.batch_id,
            "results": [r.to_dict() for r in self.results],
        }


class ExecutionOrchestrator:
    """Runs one approved batch against the ads platform and audits every item."""

    def __init__(
        self,
        db: AsyncSession,
        ads: MetaAdsClient,
        agent: AgentService,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.ads = ads
        self.agent = agent
        self.clock = clock

    async def execute(
        self,
        account_id: str,
        recommendations: List[Dict[str, Any]],
        approved_by: Optional[str],
    ) -> ExecutionReport:
        if not approved_by:
            raise ValidationError("approvedBy required")
        if not recommendations:
            raise ValidationError("recommendations array required")

        config = await self.agent.get_or_create_config(account_id)
        if len(recommendations) > config.max_changes_per_batch:
            raise ValidationError(
                f"Max {config.max_changes_per_batch} changes per batch",
                context={"max_changes_per_batch": config.max_changes_per_batch},
            )

        freshness = await self.agent.freshness(account_id)
        if not freshness.fresh:
            executor_log.warning("Batch blocked on stale data", {
                "account_id": account_id,
                "last_synced_at": freshness.last_synced_at,
            })
            if freshness.last_synced_at is None:
                message = "Account has never been synced. Sync required before execution."
            else:
                message = (
                    f"Last sync was {round(freshness.minutes_since_sync)} minutes ago. "
                    f"Sync required before execution."
                )
            raise StaleDataError(
                message,
                last_synced_at=freshness.last_synced_at.isoformat() if freshness.last_synced_at else None,
                minutes_since_sync=freshness.minutes_since_sync,
            )

        report = ExecutionReport(batch_id=new_batch_id())
        bind_context(batch_id=report.batch_id)
        approved_at = self.clock()

        for rec in recommendations:
            result = await self._execute_one(account_id, rec, report.batch_id, approved_by, approved_at)
            report.results.append(result)

        executor_log.info("Batch finished", {
            "account_id": account_id,
            "batch_id": report.batch_id,
            "executed": report.executed,
            "total": len(report.results),
        })
        return report

    async def list_executions(self, account_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = select(AgentExecution).order_by(AgentExecution.executed_at.desc()).limit(limit)
        if account_id:
            query = query.where(AgentExecution.account_id == account_id)
        result = await self.db.execute(query)
        return [
            {
                "id": e.id,
                "account_id": e.account_id,
                "batch_id": e.batch_id,
                "recommendation_id": e.recommendation_id,
                "execution_type": e.execution_type,
                "entity_level": e.entity_level,
                "entity_id": e.entity_id,
                "before_state": e.before_state,
                "after_state": e.after_state,
                "reason": e.reason,
                "risk_level": e.risk_level,
                "approved_by": e.approved_by,
                "approved_at": e.approved_at.isoformat() if e.approved_at else None,
                "status": e.status,
                "executed_at": e.executed_at.isoformat() if e.executed_at else None,
                "execution_error": e.execution_error,
            }
            for e in result.scalars().all()
        ]

    # ── Per item ───────────────────────────────────────────

    async def _execute_one(
        self,
        account_id: str,
        rec: Dict[str, Any],
        batch_id: str,
        approved_by: str,
        approved_at: datetime,
    ) -> ItemResult:
        rec_id = rec.get("id")
        rec_type = rec.get("type")
        entity_id = rec.get("entity_id")

        before: Optional[Dict[str, Any]] = None
        after: Optional[Dict[str, Any]] = None
        request_payload: Optional[Dict[str, Any]] = None
        latency_ms: Optional[int] = None
        result = ItemResult(recommendation_id=rec_id, status="failed", entity_id=entity_id)
        started = time.monotonic()

        try:
            self._validate(rec)

            if entity_id:
                state = await self.ads.get_ad_state(entity_id)
                if state.success:
                    before = state.data

            request_payload = {
                "type": rec_type,
                "entity_id": entity_id,
                "timestamp": self.clock().isoformat(),
                "batch_id": batch_id,
            }

            response = await self._dispatch(rec)
            latency_ms = int((time.monotonic() - started) * 1000)
            result.latency_ms = latency_ms

            if response.success:
                if entity_id and rec_type in REREAD_AFTER:
                    state = await self.ads.get_ad_state(entity_id)
                    after = state.data if state.success else None
                else:
                    after = response.data
                result.status = "success"
                result.platform_response = response.data
            else:
                raise ExternalServiceError(response.error or "Unknown error")

        except ConvertOSError as e:
            result.error = e.message
            result.error_code = e.error_code
        except Exception as e:
            executor_log.exception("Unexpected error executing recommendation", {"recommendation_id": rec_id})
            result.error = str(e) or e.__class__.__name__

        await self._audit(
            account_id=account_id,
            rec=rec,
            batch_id=batch_id,
            approved_by=approved_by,
            approved_at=approved_at,
            result=result,
            before=before,
            after=after,
            request_payload=request_payload,
            latency_ms=latency_ms,
        )

        if result.status == "success":
            executor_log.info("Recommendation executed", {"recommendation_id": rec_id, "type": rec_type})
        else:
            executor_log.warning("Recommendation failed", {
                "recommendation_id": rec_id,
                "type": rec_type,
                "error": result.error,
            })
        return result

    def _validate(self, rec: Dict[str, Any]) -> None:
        rec_type = rec.get("type")
        if rec_type not in ALLOWED_TYPES:
            raise ValidationError(f"Invalid type: {rec_type}")
        for name in REQUIRED_FIELDS.get(rec_type, ()):
            if not rec.get(name):
                raise ValidationError(f"{name} required")

    async def _dispatch(self, rec: Dict[str, Any]) -> PlatformResponse:
        rec_type = rec["type"]
        entity_id = rec.get("entity_id")

        if rec_type == "pause_ad":
            return await self.ads.pause_ad(entity_id)
        if rec_type == "activate_ad":
            return await self.ads.activate_ad(entity_id)
        if rec_type == "modify_copy":
            return await self.ads.update_ad_copy(entity_id, rec.get("creative_data") or {})
        if rec_type == "create_ad":
            variations = rec.get("creative_variations") or [{}]
            return await self.ads.create_entity("ad", rec.get("adset_id"), variations[0])
        if rec_type == "create_adset":
            return await self.ads.create_entity("adset", rec.get("campaign_id"), rec.get("targeting_data") or {})
        if rec_type == "create_campaign":
            return await self.ads.create_entity("campaign", None, {"objective": rec.get("objective") or "OUTCOME_LEADS"})
        if rec_type == "create_audience":
            return await self.ads.create_entity("audience", None, rec.get("audience_params") or {})
        if rec_type == "create_form":
            return await self.ads.create_entity("form", None, rec.get("form_params") or {})
        return PlatformResponse.failure("Unsupported type")

    async def _audit(
        self,
        *,
        account_id: str,
        rec: Dict[str, Any],
        batch_id: str,
        approved_by: str,
        approved_at: datetime,
        result: ItemResult,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        request_payload: Optional[Dict[str, Any]],
        latency_ms: Optional[int],
    ) -> None:
        captured_at = self.clock().isoformat()

        before_state = None
        if before is not None:
            before_state = {**before, "_metadata": {"captured_at": captured_at, "batch_id": batch_id}}

        after_state = None
        if after is not None:
            after_state = {
                **after,
                "_metadata": {
                    "captured_at": captured_at,
                    "batch_id": batch_id,
                    "request_payload": request_payload,
                    "response": {"success": result.status == "success", "latency_ms": latency_ms},
                    "latency_ms": latency_ms,
                },
            }

        now = self.clock()
        self.db.add(AgentExecution(
            account_id=account_id,
            batch_id=batch_id,
            recommendation_id=str(rec["id"]) if rec.get("id") is not None else None,
            execution_type=str(rec.get("type") or "unknown"),
            entity_level=rec.get("entity_level") or "unknown",
            entity_id=rec.get("entity_id") or None,
            before_state=before_state,
            after_state=after_state,
            reason=rec.get("reason"),
            risk_level=rec.get("risk_level") or "unknown",
            approved_by=approved_by,
            approved_at=approved_at,
            status=ExecutionStatus.EXECUTED.value if result.status == "success" else ExecutionStatus.FAILED.value,
            executed_at=now,
            execution_error=result.error,
        ))
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            executor_log.error("Failed to write audit record", {"recommendation_id": rec.get("id"), "error": str(e)})
            raise PersistenceError(f"Failed to write audit record: {e}") from e
