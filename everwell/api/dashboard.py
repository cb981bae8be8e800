from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from everwell.api.auth import get_current_user
from everwell.core.dashboard import DayValue, build_dashboard_summary
from everwell.core.metric_values import day_start
from everwell.db.models import Measurement, MetricDefinition, User
from everwell.db.session import get_db
from everwell.services.metrics_service import MetricsService, utc_today

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

STREAK_LOOKBACK_DAYS = 365


class SparkPoint(BaseModel):
    date: str
    value: float


class DashboardSummaryResponse(BaseModel):
    primary_metric: str
    weekly_avg: Optional[float] = None
    weight_delta: Optional[float] = None
    sleep_avg: Optional[float] = None
    current_streak: int
    sparklines: dict[str, list[SparkPoint]]


@router.get("/summary", response_model=DashboardSummaryResponse)
def get_dashboard_summary(
    metric: str = Query(default="steps", max_length=64),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> DashboardSummaryResponse:
    today = utc_today()
    since = day_start(today - timedelta(days=7))
    numeric_rows = (
        db.query(Measurement.measured_at, MetricDefinition.slug, Measurement.value_numeric)
        .join(MetricDefinition, Measurement.metric_id == MetricDefinition.id)
        .filter(Measurement.user_id == user.id, Measurement.measured_at >= since)
        .all()
    )
    points = [DayValue(measured_at.date(), slug, value) for measured_at, slug, value in numeric_rows]

    logged_days = {
        measured_at.date()
        for (measured_at,) in db.query(Measurement.measured_at)
        .filter(
            Measurement.user_id == user.id,
            Measurement.measured_at >= day_start(today - timedelta(days=STREAK_LOOKBACK_DAYS)),
        )
        .distinct()
        .all()
    }
    enabled = [item["slug"] for item in MetricsService.get_user_enabled_metrics(db, user.id)]

    summary = build_dashboard_summary(points, logged_days, enabled, today, primary_slug=metric)
    return DashboardSummaryResponse(**summary)
