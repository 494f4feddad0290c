"""
Ads agent endpoints: analyze an account, execute approved changes,
and read back the audit trail.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from convertos.api.deps import get_agent_service, get_orchestrator
from convertos.schemas import AnalyzeRequest, ExecuteRequest, ExecuteResponse
from convertos.services.execution_service import ExecutionOrchestrator
from convertos.services.recommendation_engine import AgentService

router = APIRouter(prefix="/agent", tags=["agent"])


@router.post("/analyze")
async def analyze(body: AnalyzeRequest, agent: AgentService = Depends(get_agent_service)):
    """
    Recommendations for one account.

    Actionable items are capped at the account's max_changes_per_batch;
    the rest come back in `overflow_recommendations`, and low-data
    diagnostics in `monitor_recommendations`.
    """
    return await agent.analyze(body.accountId, body.datePreset)


@router.post("/execute", response_model=ExecuteResponse, response_model_exclude_none=True)
async def execute(body: ExecuteRequest, orchestrator: ExecutionOrchestrator = Depends(get_orchestrator)):
    """
    Execute an approved batch.

    412 when account data is stale (nothing runs), 400 when the batch is
    empty, unapproved, or larger than max_changes_per_batch.
    """
    report = await orchestrator.execute(
        body.accountId,
        [r.model_dump() for r in body.recommendations],
        body.approvedBy,
    )
    return report.to_dict()


@router.get("/executions")
async def list_executions(
    accountId: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
):
    executions = await orchestrator.list_executions(accountId, limit=limit)
    return {"executions": executions, "count": len(executions)}
