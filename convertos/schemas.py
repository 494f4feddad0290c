"""Pydantic schemas for API request/response validation"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============ Connections ============

class RotateSecretResponse(BaseModel):
    success: bool = True
    newSecret: str
    previousSecretValidUntil: str
    message: str


class ReprocessRequest(BaseModel):
    connection_id: Optional[str] = None  # internal connection id; all connections when omitted
    limit: int = Field(default=100, ge=1, le=1000)


class ReprocessResponse(BaseModel):
    success: bool = True
    attempted: int
    processed: int
    failed: int


# ============ Agent ============

class AnalyzeRequest(BaseModel):
    accountId: str
    datePreset: str = "last_7d"


class RecommendationIn(BaseModel):
    """One approved recommendation. Unknown keys pass through to the executor."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: Optional[str] = None
    entity_level: Optional[str] = None
    entity_id: Optional[str] = None
    adset_id: Optional[str] = None
    campaign_id: Optional[str] = None
    reason: Optional[str] = None
    risk_level: Optional[str] = None
    creative_data: Optional[Dict[str, Any]] = None
    creative_variations: Optional[List[Dict[str, Any]]] = None


class ExecuteRequest(BaseModel):
    accountId: str
    recommendations: List[RecommendationIn] = Field(default_factory=list)
    approvedBy: Optional[str] = None


class ExecutionItem(BaseModel):
    recommendation_id: Optional[str] = None
    status: str
    entity_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    platform_response: Optional[Dict[str, Any]] = None
    latency_ms: Optional[int] = None


class ExecuteResponse(BaseModel):
    success: bool = True
    executed: int
    batch_id: str
    results: List[ExecutionItem]
