from collections.abc import Callable
from datetime import timedelta
from typing import Any, Optional, TypeVar

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from everwell.api.auth import get_optional_user
from everwell.core import config
from everwell.core.config import INSIGHTS_MIN_DAYS, INSIGHTS_WINDOW_DAYS
from everwell.core.errors import InsightsApiError, ReasonCode, log_error
from everwell.core.metric_values import day_start, measurement_value
from everwell.db.models import Measurement, User
from everwell.db.session import get_db
from everwell.services.insights_service import InsightsService, get_last_monday
from everwell.services.insights_usage import InsightsUsageService
from everwell.services.llm import InsightsProvider, InsightsResult, LLMRequestError, get_insights_provider
from everwell.services.metrics_service import utc_today

router = APIRouter(prefix="/api", tags=["insights"])

T = TypeVar("T")

# Non-PHI sample used by the self-test when the caller has logged nothing yet.
SELFTEST_SAMPLE_DATA: dict[str, Any] = {
    "2024-01-15": {
        "weight_lbs": {"value": 155.4, "unit": "lbs", "name": "Weight"},
        "sleep_hours": {"value": 7.5, "unit": "hours", "name": "Sleep Hours"},
    },
    "2024-01-16": {
        "weight_lbs": {"value": 155.0, "unit": "lbs", "name": "Weight"},
        "sleep_hours": {"value": 8.0, "unit": "hours", "name": "Sleep Hours"},
    },
}


class InsightsBody(BaseModel):
    summary: str
    recommendations: list[str]
    observations: list[str]


class PlanBody(BaseModel):
    focus_areas: list[str]
    weekly_goals: list[str]


class InsightsResponse(BaseModel):
    ok: bool = True
    insights: InsightsBody
    plan: PlanBody
    cached: bool = False


class UsageBody(BaseModel):
    today: int
    weekly: int
    monthly: int
    daily_limit: int
    can_generate: bool
    remaining: int


class UsageResponse(BaseModel):
    ok: bool = True
    usage: UsageBody


class HealthEnv(BaseModel):
    openai_key_present: bool
    model: str
    base_url: str


class ProviderPing(BaseModel):
    attempted: bool = False
    status: Optional[int] = None
    latency_ms: Optional[int] = None
    parsed_json: Optional[bool] = None
    error: Optional[str] = None


class InsightsHealthResponse(BaseModel):
    ok: bool = True
    env: HealthEnv
    provider_ping: ProviderPing
    notes: list[str]


class SelftestResponse(BaseModel):
    ok: bool = True
    metrics_checked: int
    provider: str
    model: str
    result: InsightsBody


class DailyInsightBody(BaseModel):
    summary: str
    actions: list[str]
    risk_flags: list[str]


class DailyInsightResponse(BaseModel):
    ok: bool = True
    insight: DailyInsightBody


class InsightsTodayResponse(BaseModel):
    ok: bool = True
    today: Optional[dict[str, Any]] = None
    recent: list[dict[str, Any]]
    ai_insight: Optional[dict[str, Any]] = None
    trends: dict[str, Optional[float]]


class WeeklyPlanResponse(BaseModel):
    ok: bool = True
    day: str
    plan: DailyInsightBody


def build_insights_payload(rows: list[Measurement], days: int = INSIGHTS_WINDOW_DAYS) -> dict[str, Any]:
    data_by_date: dict[str, dict[str, Any]] = {}
    for row in rows:
        value = measurement_value(row)
        if value is None:
            continue
        day_key = row.measured_at.date().isoformat()
        data_by_date.setdefault(day_key, {})[row.metric.slug] = {
            "value": value,
            "unit": row.metric.unit,
            "name": row.metric.name,
        }
    return {"days": days, "dataByDate": data_by_date}


def _plan_for(result: InsightsResult) -> PlanBody:
    return PlanBody(focus_areas=list(result.recommendations), weekly_goals=list(result.recommendations[:3]))


def _require_user(user: Optional[User]) -> User:
    if user is None:
        raise InsightsApiError(ReasonCode.not_authenticated, "User not authenticated")
    return user


def _require_provider(provider: Optional[InsightsProvider]) -> InsightsProvider:
    if provider is None:
        raise InsightsApiError(
            ReasonCode.no_openai_key,
            "OpenAI API key not configured. Please add OPENAI_API_KEY to your environment variables.",
        )
    return provider


def _load_window(db: Session, user_id: int) -> list[Measurement]:
    start = day_start(utc_today() - timedelta(days=INSIGHTS_WINDOW_DAYS))
    try:
        return (
            db.query(Measurement)
            .options(joinedload(Measurement.metric))
            .filter(Measurement.user_id == user_id, Measurement.measured_at >= start)
            .order_by(Measurement.measured_at.asc())
            .all()
        )
    except SQLAlchemyError as exc:
        log_error("insights.fetch_measurements", exc, user_id=user_id)
        raise InsightsApiError(ReasonCode.fetch_error, "Failed to fetch measurements")


def _call_provider(label: str, user_id: int, call: Callable[[], T]) -> T:
    try:
        return call()
    except LLMRequestError as exc:
        log_error(label, exc, user_id=user_id, reason=exc.reason.value)
        raise InsightsApiError(exc.reason, str(exc))
    except (InsightsApiError, ValueError):
        raise
    except Exception as exc:
        log_error(label, exc, user_id=user_id)
        raise InsightsApiError(ReasonCode.server_error, "Internal server error")


@router.post("/insights", response_model=InsightsResponse)
def generate_insights(
    user: Optional[User] = Depends(get_optional_user),
    provider: Optional[InsightsProvider] = Depends(get_insights_provider),
    db: Session = Depends(get_db),
) -> InsightsResponse:
    user = _require_user(user)
    provider = _require_provider(provider)

    rows = _load_window(db, user.id)
    unique_days = {row.measured_at.date() for row in rows}
    if len(unique_days) < INSIGHTS_MIN_DAYS:
        raise InsightsApiError(
            ReasonCode.not_enough_data,
            f"Add a few more days of entries to generate insights. We need at least {INSIGHTS_MIN_DAYS} days of data.",
        )

    payload = build_insights_payload(rows)

    usage = InsightsUsageService.check_usage_limit(db, user.id)
    if not usage["can_generate"]:
        raise InsightsApiError(
            ReasonCode.rate_limit,
            f"Daily insights limit reached ({usage['daily_limit']} per day). Please try again tomorrow.",
        )

    cached = InsightsUsageService.get_cached_insights(db, user.id, payload)
    if cached and cached["is_valid"]:
        result = InsightsResult.model_validate(cached["content"])
        return InsightsResponse(
            insights=InsightsBody(**result.model_dump()), plan=_plan_for(result), cached=True
        )

    result = _call_provider("insights.generate", user.id, lambda: provider.generate_insights(payload))

    InsightsUsageService.cache_insights(db, user.id, payload, result.model_dump())
    InsightsUsageService.increment_usage(db, user.id)
    InsightsUsageService.clear_old_cache(db, user.id)

    return InsightsResponse(insights=InsightsBody(**result.model_dump()), plan=_plan_for(result), cached=False)


@router.get("/insights/usage", response_model=UsageResponse)
def insights_usage(
    user: Optional[User] = Depends(get_optional_user), db: Session = Depends(get_db)
) -> UsageResponse:
    user = _require_user(user)
    stats = InsightsUsageService.get_usage_stats(db, user.id)
    limit = InsightsUsageService.check_usage_limit(db, user.id)
    daily_limit = limit["daily_limit"]
    remaining = -1 if daily_limit == -1 else max(0, daily_limit - stats["today_count"])
    return UsageResponse(
        usage=UsageBody(
            today=stats["today_count"],
            weekly=stats["weekly_count"],
            monthly=stats["monthly_count"],
            daily_limit=daily_limit,
            can_generate=limit["can_generate"],
            remaining=remaining,
        )
    )


@router.get("/insights/health", response_model=InsightsHealthResponse)
def insights_health(provider: Optional[InsightsProvider] = Depends(get_insights_provider)) -> InsightsHealthResponse:
    key_present = config.openai_api_key() is not None
    model = provider.model if provider else config.openai_model()
    base_url = config.openai_base_url()
    notes = [
        f"Environment check: key={'present' if key_present else 'missing'}, model={model}, baseUrl={base_url}"
    ]

    if provider is None:
        notes.append("Skipping provider ping: No OpenAI API key present")
        ping = ProviderPing()
    else:
        ping = ProviderPing(**provider.ping())
        if ping.error:
            notes.append(f"Provider ping failed: {ping.error}")
        else:
            notes.append(f"Provider ping successful: {ping.latency_ms}ms, parsed JSON correctly")

    return InsightsHealthResponse(
        env=HealthEnv(openai_key_present=key_present, model=model, base_url=base_url),
        provider_ping=ping,
        notes=notes,
    )


@router.post("/insights/selftest", response_model=SelftestResponse)
def insights_selftest(
    user: Optional[User] = Depends(get_optional_user),
    provider: Optional[InsightsProvider] = Depends(get_insights_provider),
    db: Session = Depends(get_db),
) -> SelftestResponse:
    user = _require_user(user)
    provider = _require_provider(provider)

    rows = _load_window(db, user.id)
    if rows:
        payload = build_insights_payload(rows)
        metrics_checked = len(rows)
    else:
        payload = {"days": INSIGHTS_WINDOW_DAYS, "dataByDate": SELFTEST_SAMPLE_DATA}
        metrics_checked = len(SELFTEST_SAMPLE_DATA)

    result = _call_provider("insights.selftest", user.id, lambda: provider.generate_insights(payload))
    return SelftestResponse(
        metrics_checked=metrics_checked,
        provider=provider.provider_name,
        model=provider.model,
        result=InsightsBody(**result.model_dump()),
    )


@router.post("/insights/generate", response_model=DailyInsightResponse)
def generate_daily_insight(
    user: Optional[User] = Depends(get_optional_user),
    provider: Optional[InsightsProvider] = Depends(get_insights_provider),
    db: Session = Depends(get_db),
) -> DailyInsightResponse:
    user = _require_user(user)
    provider = _require_provider(provider)
    try:
        insight = _call_provider(
            "insights.daily", user.id, lambda: InsightsService.generate_ai_insight(db, user.id, provider)
        )
    except ValueError as exc:
        log_error("insights.daily.parse", exc, user_id=user.id)
        raise InsightsApiError(ReasonCode.server_error, "Failed to generate AI insight")
    return DailyInsightResponse(insight=DailyInsightBody(**insight))


@router.get("/insights/today", response_model=InsightsTodayResponse)
def insights_today(
    user: Optional[User] = Depends(get_optional_user), db: Session = Depends(get_db)
) -> InsightsTodayResponse:
    user = _require_user(user)
    return InsightsTodayResponse(**InsightsService.get_insights_data(db, user.id))


@router.post("/plan/weekly", response_model=WeeklyPlanResponse)
def weekly_plan(
    user: Optional[User] = Depends(get_optional_user),
    provider: Optional[InsightsProvider] = Depends(get_insights_provider),
    db: Session = Depends(get_db),
) -> WeeklyPlanResponse:
    user = _require_user(user)
    provider = _require_provider(provider)
    plan = _call_provider(
        "plan.weekly", user.id, lambda: InsightsService.generate_weekly_plan(db, user.id, provider)
    )
    return WeeklyPlanResponse(day=get_last_monday().isoformat(), plan=DailyInsightBody(**plan))
