"""
Recommendation Engine - proposes ad-level changes from recent performance.

Policy is an ordered chain of independent rules. Each rule inspects one
ad's metrics against the account baseline and yields a diagnostic or
nothing; the first rule that fires decides the ad's recommendation.

- Fatigue: average frequency above the configured threshold
- Underperformance: CPL > 1.3x baseline or CTR < 0.5x baseline,
  skipped for ads launched recently

Ads without enough spend or impressions are never actionable. They get a
`monitor` recommendation carrying the same diagnostic instead.

`RecommendationEngine` is pure; `AgentService` loads the snapshots and
agent configuration from the database and feeds them in.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from convertos.core.structured_logging import agent_log
from convertos.db.models import AgentConfig, MetaAd, MetaAdAccount, MetaAdSet, MetaInsight

ACTIVE = "ACTIVE"

UNDERPERFORMING_CPL_RATIO = 1.3
UNDERPERFORMING_CTR_RATIO = 0.5
VARIATION_CPL_RATIO = 1.2

# Ads without a known launch time are never treated as recently launched.
UNKNOWN_LAUNCH_AGE_DAYS = 999.0

LAST_ACTIVE_WARNING = " LAST ACTIVE AD IN AD SET - pausing will stop delivery."

DATE_PRESET_DAYS = {
    "today": 1,
    "yesterday": 2,
    "last_3d": 3,
    "last_7d": 7,
    "last_14d": 14,
    "last_30d": 30,
}


# ── Snapshots ─────────────────────────────────────────────

@dataclass
class AdSnapshot:
    ad_id: str
    adset_id: str
    name: str = ""
    effective_status: Optional[str] = None
    created_time: Optional[datetime] = None
    creative_title: Optional[str] = None
    creative_body: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.effective_status == ACTIVE


@dataclass
class AdSetSnapshot:
    adset_id: str
    name: str = ""
    effective_status: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.effective_status == ACTIVE


@dataclass
class InsightSnapshot:
    entity_id: str
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    leads: int = 0
    frequency: float = 0.0


@dataclass
class AgentThresholds:
    high_spend_threshold: float = 150.0
    recent_launch_days: int = 7
    frequency_threshold: float = 3.5
    max_changes_per_batch: int = 5
    min_spend: float = 20.0
    min_impressions: int = 1000

    @classmethod
    def from_config(cls, config: AgentConfig, min_spend: float, min_impressions: int) -> "AgentThresholds":
        return cls(
            high_spend_threshold=float(config.high_spend_threshold),
            recent_launch_days=int(config.recent_launch_days),
            frequency_threshold=float(config.frequency_threshold),
            max_changes_per_batch=int(config.max_changes_per_batch),
            min_spend=min_spend,
            min_impressions=min_impressions,
        )


# ── Metrics ───────────────────────────────────────────────

def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


@dataclass
class Baseline:
    spend: float = 0.0
    leads: int = 0
    clicks: int = 0
    impressions: int = 0

    @property
    def cpl(self) -> float:
        return _ratio(self.spend, self.leads)

    @property
    def ctr(self) -> float:
        return _ratio(self.clicks, self.impressions)

    @classmethod
    def from_insights(cls, insights: Sequence[InsightSnapshot]) -> "Baseline":
        return cls(
            spend=sum(i.spend or 0.0 for i in insights),
            leads=sum(i.leads or 0 for i in insights),
            clicks=sum(i.clicks or 0 for i in insights),
            impressions=sum(i.impressions or 0 for i in insights),
        )

    def to_dict(self) -> Dict[str, float]:
        return {"cpl": round(self.cpl, 4), "ctr": round(self.ctr, 6), "spend": round(self.spend, 2), "leads": self.leads}


@dataclass
class AdMetrics:
    ad: AdSnapshot
    spend: float
    leads: int
    clicks: int
    impressions: int
    frequency: float
    days_since_launch: float

    @property
    def cpl(self) -> float:
        return _ratio(self.spend, self.leads)

    @property
    def ctr(self) -> float:
        return _ratio(self.clicks, self.impressions)

    @classmethod
    def compute(cls, ad: AdSnapshot, insights: Sequence[InsightSnapshot], now: datetime) -> "AdMetrics":
        if ad.created_time is not None:
            days = (now - ad.created_time).total_seconds() / 86400
        else:
            days = UNKNOWN_LAUNCH_AGE_DAYS
        return cls(
            ad=ad,
            spend=sum(i.spend or 0.0 for i in insights),
            leads=sum(i.leads or 0 for i in insights),
            clicks=sum(i.clicks or 0 for i in insights),
            impressions=sum(i.impressions or 0 for i in insights),
            frequency=_ratio(sum(i.frequency or 0.0 for i in insights), len(insights)),
            days_since_launch=days,
        )

    def has_minimum_data(self, thresholds: AgentThresholds) -> bool:
        return self.spend >= thresholds.min_spend and self.impressions >= thresholds.min_impressions


# ── Rules ─────────────────────────────────────────────────

@dataclass
class Rule:
    """One classifier in the chain: a predicate plus the diagnostic it produces."""
    name: str
    base_risk: str
    applies: Callable[[AdMetrics, Baseline, AgentThresholds], bool]
    describe: Callable[[AdMetrics, Baseline, AgentThresholds], str]
    proposed_state: str = "PAUSED"


def _is_fatigued(m: AdMetrics, baseline: Baseline, t: AgentThresholds) -> bool:
    return m.frequency > t.frequency_threshold


def _describe_fatigue(m: AdMetrics, baseline: Baseline, t: AgentThresholds) -> str:
    return (
        f"Frequency fatigue detected ({m.frequency:.2f} > {t.frequency_threshold}). "
        f"CPL: ${m.cpl:.2f} vs account avg ${baseline.cpl:.2f}."
    )


def _is_underperforming(m: AdMetrics, baseline: Baseline, t: AgentThresholds) -> bool:
    if m.days_since_launch < t.recent_launch_days:
        return False
    weak_cpl = baseline.cpl > 0 and m.cpl > baseline.cpl * UNDERPERFORMING_CPL_RATIO
    weak_ctr = baseline.ctr > 0 and m.ctr < baseline.ctr * UNDERPERFORMING_CTR_RATIO
    return weak_cpl or weak_ctr


def _describe_underperformance(m: AdMetrics, baseline: Baseline, t: AgentThresholds) -> str:
    cpl_diff = _ratio(m.cpl - baseline.cpl, baseline.cpl) * 100
    ctr_diff = _ratio(m.ctr - baseline.ctr, baseline.ctr) * 100
    return (
        f"Underperforming: CPL ${m.cpl:.2f} ({cpl_diff:+.0f}% vs avg), "
        f"CTR {m.ctr * 100:.2f}% ({ctr_diff:+.0f}% vs avg)."
    )


DEFAULT_RULES: List[Rule] = [
    Rule("fatigue", "medium", _is_fatigued, _describe_fatigue, "PAUSED (preserve learning data)"),
    Rule("underperformance", "low", _is_underperforming, _describe_underperformance),
]


# ── Output ────────────────────────────────────────────────

@dataclass
class Recommendation:
    id: str
    type: str  # pause_ad | create_ad | monitor
    entity_level: str
    entity_id: Optional[str]
    reason: str
    risk_level: str
    preview: Dict[str, str] = field(default_factory=dict)
    rule: Optional[str] = None
    adset_id: Optional[str] = None
    creative_variations: Optional[List[Dict[str, str]]] = None

    @property
    def actionable(self) -> bool:
        return self.type != "monitor"

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class AnalysisResult:
    summary: str
    baseline: Baseline
    recommendations: List[Recommendation]
    overflow_recommendations: List[Recommendation]
    monitor_recommendations: List[Recommendation]
    active_ads: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analysis_summary": self.summary,
            "baseline": self.baseline.to_dict(),
            "recommendations": [r.to_dict() for r in self.recommendations],
            "overflow_recommendations": [r.to_dict() for r in self.overflow_recommendations],
            "monitor_recommendations": [r.to_dict() for r in self.monitor_recommendations],
        }


def creative_variations(ad: AdSnapshot) -> List[Dict[str, str]]:
    """Variation briefs built from the ad's existing creative, one per angle."""
    headline = ad.creative_title or ad.name or "Your offer"
    body = ad.creative_body or ""
    return [
        {
            "angle": "benefit",
            "headline": headline,
            "primary_text": f"{body} See what you get before you commit.".strip(),
            "cta": "LEARN_MORE",
        },
        {
            "angle": "urgency",
            "headline": f"{headline} - Limited Time",
            "primary_text": f"{body} Spots are filling up this week.".strip(),
            "cta": "SIGN_UP",
        },
        {
            "angle": "social_proof",
            "headline": f"Why customers choose {headline}",
            "primary_text": f"{body} Join the people who already made the switch.".strip(),
            "cta": "GET_QUOTE",
        },
    ]


# ── Engine ────────────────────────────────────────────────

class RecommendationEngine:
    """Pure classification over account snapshots."""

    def __init__(
        self,
        thresholds: AgentThresholds,
        rules: Optional[List[Rule]] = None,
        now: Optional[datetime] = None,
    ):
        self.thresholds = thresholds
        self.rules = rules if rules is not None else DEFAULT_RULES
        self.now = now or datetime.utcnow()

    def analyze(
        self,
        ads: Sequence[AdSnapshot],
        adsets: Sequence[AdSetSnapshot],
        insights: Sequence[InsightSnapshot],
        date_preset: str = "last_7d",
    ) -> AnalysisResult:
        insights_by_ad: Dict[str, List[InsightSnapshot]] = {}
        for insight in insights:
            insights_by_ad.setdefault(insight.entity_id, []).append(insight)

        active_ads = [ad for ad in ads if ad.is_active]
        active_by_adset: Dict[str, List[AdSnapshot]] = {}
        for ad in active_ads:
            active_by_adset.setdefault(ad.adset_id, []).append(ad)

        baseline = Baseline.from_insights(
            [i for ad in active_ads for i in insights_by_ad.get(ad.ad_id, [])]
        )

        recommendations: List[Recommendation] = []
        for ad in active_ads:
            ad_insights = insights_by_ad.get(ad.ad_id)
            if not ad_insights:
                continue
            metrics = AdMetrics.compute(ad, ad_insights, self.now)
            is_last_active = len(active_by_adset.get(ad.adset_id, [])) == 1
            rec = self.classify(metrics, baseline, is_last_active)
            if rec is not None:
                recommendations.append(rec)

        for adset in adsets:
            rec = self._variation_for(adset, active_by_adset.get(adset.adset_id, []), insights_by_ad, baseline)
            if rec is not None:
                recommendations.append(rec)

        actionable = [r for r in recommendations if r.actionable]
        monitor = [r for r in recommendations if not r.actionable]
        cap = max(self.thresholds.max_changes_per_batch, 0)

        summary = (
            f"Analysis ({date_preset}): {len(recommendations)} recommendations generated. "
            f"Account avg CPL: ${baseline.cpl:.2f}, CTR: {baseline.ctr * 100:.2f}%. "
            f"{len(active_ads)} active ads analyzed."
        )
        if len(actionable) > cap:
            summary += f" {len(actionable) - cap} actionable recommendations held back by the batch limit."

        return AnalysisResult(
            summary=summary,
            baseline=baseline,
            recommendations=actionable[:cap],
            overflow_recommendations=actionable[cap:],
            monitor_recommendations=monitor,
            active_ads=len(active_ads),
        )

    def classify(self, metrics: AdMetrics, baseline: Baseline, is_last_active: bool) -> Optional[Recommendation]:
        """Run the rule chain for one ad. First matching rule wins."""
        t = self.thresholds
        ad = metrics.ad

        for rule in self.rules:
            if not rule.applies(metrics, baseline, t):
                continue

            diagnostic = rule.describe(metrics, baseline, t)

            if not metrics.has_minimum_data(t):
                return Recommendation(
                    id=f"monitor-{rule.name}-{ad.ad_id}",
                    type="monitor",
                    entity_level="ad",
                    entity_id=ad.ad_id,
                    reason=(
                        f"{diagnostic} Insufficient data (spend: ${metrics.spend:.2f}, "
                        f"impressions: {metrics.impressions}). MONITOR - do not pause yet."
                    ),
                    risk_level="low",
                    rule=rule.name,
                    preview={
                        "current_state": f"ACTIVE, spend: ${metrics.spend:.2f}, CPL: ${metrics.cpl:.2f}",
                        "proposed_state": "MONITOR (wait for more data)",
                    },
                )

            risk = rule.base_risk
            reason = diagnostic
            if metrics.spend > t.high_spend_threshold:
                risk = "high"
                reason += f" High spend: ${metrics.spend:.2f}."
            if is_last_active:
                risk = "high"
                reason += LAST_ACTIVE_WARNING

            return Recommendation(
                id=f"pause-{rule.name}-{ad.ad_id}",
                type="pause_ad",
                entity_level="ad",
                entity_id=ad.ad_id,
                reason=reason,
                risk_level=risk,
                rule=rule.name,
                preview={
                    "current_state": (
                        f"ACTIVE, spend: ${metrics.spend:.2f}, CPL: ${metrics.cpl:.2f}, "
                        f"frequency: {metrics.frequency:.2f}"
                    ),
                    "proposed_state": rule.proposed_state,
                },
            )
        return None

    def _variation_for(
        self,
        adset: AdSetSnapshot,
        active_ads: List[AdSnapshot],
        insights_by_ad: Dict[str, List[InsightSnapshot]],
        baseline: Baseline,
    ) -> Optional[Recommendation]:
        """A well-performing ad set running a single creative gets a variation proposal."""
        if not adset.is_active or len(active_ads) != 1:
            return None

        only_ad = active_ads[0]
        adset_cpl = Baseline.from_insights(insights_by_ad.get(only_ad.ad_id, [])).cpl
        if not (0 < adset_cpl < baseline.cpl * VARIATION_CPL_RATIO):
            return None

        return Recommendation(
            id=f"create-ad-{adset.adset_id}",
            type="create_ad",
            entity_level="ad",
            entity_id=None,
            adset_id=adset.adset_id,
            reason=(
                f"Top-performing ad set (CPL ${adset_cpl:.2f}) has only 1 active ad. "
                f"Create variation to test creative angle."
            ),
            risk_level="medium",
            preview={
                "current_state": f'1 ad in ad set "{adset.name}"',
                "proposed_state": "2 ads (new creative variation)",
            },
            creative_variations=creative_variations(only_ad),
        )


# ── Freshness ─────────────────────────────────────────────

@dataclass
class Freshness:
    fresh: bool
    last_synced_at: Optional[datetime]
    minutes_since_sync: Optional[float]

    @property
    def label(self) -> str:
        return "fresh" if self.fresh else "stale"


async def load_freshness(
    db: AsyncSession,
    account_id: str,
    max_age: timedelta,
    now: Optional[datetime] = None,
) -> Freshness:
    """How long ago the account was last synced. Never synced counts as stale."""
    now = now or datetime.utcnow()
    result = await db.execute(select(MetaAdAccount.last_synced_at).where(MetaAdAccount.account_id == account_id))
    last_synced_at = result.scalar_one_or_none()
    if last_synced_at is None:
        return Freshness(False, None, None)
    minutes = (now - last_synced_at).total_seconds() / 60
    return Freshness(minutes < max_age.total_seconds() / 60, last_synced_at, round(minutes, 1))


# ── Service ───────────────────────────────────────────────

class AgentService:
    """Loads account snapshots and agent config, then runs the engine."""

    def __init__(
        self,
        db: AsyncSession,
        max_data_age: timedelta = timedelta(minutes=60),
        min_spend: float = 20.0,
        min_impressions: int = 1000,
        window_days: int = 7,
        config_defaults: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.max_data_age = max_data_age
        self.min_spend = min_spend
        self.min_impressions = min_impressions
        self.window_days = window_days
        self.config_defaults = config_defaults or {}
        self.clock = clock

    async def get_or_create_config(self, account_id: str) -> AgentConfig:
        result = await self.db.execute(select(AgentConfig).where(AgentConfig.account_id == account_id))
        config = result.scalar_one_or_none()
        if config is None:
            config = AgentConfig(account_id=account_id, allow_learning_edits=False, **self.config_defaults)
            self.db.add(config)
            await self.db.commit()
            await self.db.refresh(config)
            agent_log.info("Created default agent config", {"account_id": account_id})
        return config

    async def thresholds_for(self, account_id: str) -> AgentThresholds:
        config = await self.get_or_create_config(account_id)
        return AgentThresholds.from_config(config, self.min_spend, self.min_impressions)

    async def freshness(self, account_id: str) -> Freshness:
        return await load_freshness(self.db, account_id, self.max_data_age, self.clock())

    async def analyze(self, account_id: str, date_preset: str = "last_7d") -> Dict[str, Any]:
        now = self.clock()
        thresholds = await self.thresholds_for(account_id)

        window_days = DATE_PRESET_DAYS.get(date_preset)
        if window_days is None:
            agent_log.warning("Unknown date preset, using default window", {"date_preset": date_preset})
            window_days = self.window_days

        ad_rows = (await self.db.execute(select(MetaAd).where(MetaAd.account_id == account_id))).scalars().all()
        adset_rows = (await self.db.execute(select(MetaAdSet).where(MetaAdSet.account_id == account_id))).scalars().all()

        ads = [
            AdSnapshot(
                ad_id=a.ad_id,
                adset_id=a.adset_id,
                name=a.name,
                effective_status=a.effective_status,
                created_time=a.created_time,
                creative_title=a.creative_title,
                creative_body=a.creative_body,
            )
            for a in ad_rows
        ]
        adsets = [AdSetSnapshot(s.adset_id, s.name, s.effective_status) for s in adset_rows]

        insights: List[InsightSnapshot] = []
        if ads:
            insight_rows = (await self.db.execute(
                select(MetaInsight).where(
                    MetaInsight.entity_type == "ad",
                    MetaInsight.entity_id.in_([a.ad_id for a in ads]),
                    MetaInsight.date_start >= now - timedelta(days=window_days),
                )
            )).scalars().all()
            insights = [
                InsightSnapshot(
                    entity_id=i.entity_id,
                    spend=float(i.spend or 0.0),
                    impressions=i.impressions or 0,
                    clicks=i.clicks or 0,
                    leads=i.leads or 0,
                    frequency=float(i.frequency or 0.0),
                )
                for i in insight_rows
            ]

        result = RecommendationEngine(thresholds, now=now).analyze(ads, adsets, insights, date_preset)
        freshness = await self.freshness(account_id)

        response = result.to_dict()
        response["data_freshness"] = freshness.label
        if not freshness.fresh:
            last = freshness.last_synced_at.isoformat() if freshness.last_synced_at else "never"
            response["analysis_summary"] += f" DATA IS STALE (last sync: {last}). Sync before executing."

        agent_log.info("Analysis complete", {
            "account_id": account_id,
            "actionable": len(result.recommendations),
            "overflow": len(result.overflow_recommendations),
            "monitor": len(result.monitor_recommendations),
            "data_freshness": freshness.label,
        })
        return response
