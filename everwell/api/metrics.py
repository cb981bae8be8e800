from datetime import date
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from everwell.api.auth import get_current_user
from everwell.core.metric_values import measurement_value
from everwell.db.models import Measurement, User
from everwell.db.session import get_db
from everwell.services.metrics_service import MetricsService, reminders_of

router = APIRouter(prefix="/api", tags=["metrics"])

MetricInput = Union[bool, float, str]


class MetricDefinitionItem(BaseModel):
    id: int
    slug: str
    name: str
    unit: Optional[str] = None
    input_kind: str
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    step_value: Optional[float] = None
    category: str
    default_enabled: bool
    sort_order: int


class EnabledMetricItem(MetricDefinitionItem):
    enabled: bool = True
    target_value: Optional[float] = None
    unit_override: Optional[str] = None


class MetricDefinitionListResponse(BaseModel):
    items: list[MetricDefinitionItem]


class EnabledMetricListResponse(BaseModel):
    items: list[EnabledMetricItem]


class MetricSettingsUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    target_value: Optional[float] = None
    unit_override: Optional[str] = Field(default=None, max_length=32)


class MetricSettingsResponse(BaseModel):
    metric_slug: str
    enabled: bool
    target_value: Optional[float] = None
    unit_override: Optional[str] = None


class MeasurementEntry(BaseModel):
    metric_slug: str = Field(min_length=1, max_length=64)
    value: MetricInput


class SaveMeasurementsRequest(BaseModel):
    day: Optional[date] = None
    entries: list[MeasurementEntry] = Field(min_length=1)


class SaveMeasurementsResponse(BaseModel):
    count: int


class MeasurementItem(BaseModel):
    id: int
    day: date
    metric_slug: str
    metric_name: str
    unit: Optional[str] = None
    value: Optional[MetricInput] = None
    display_value: str


class MeasurementListResponse(BaseModel):
    items: list[MeasurementItem]


class ChartPoint(BaseModel):
    date: str
    value: float


class ChartResponse(BaseModel):
    metric_slug: str
    points: list[ChartPoint]


class WeeklyProgressItem(BaseModel):
    metric_slug: str
    metric_name: str
    current_avg: float
    target_value: Optional[float] = None
    progress_percent: Optional[float] = None


class WeeklyProgressResponse(BaseModel):
    items: list[WeeklyProgressItem]


class PreferencesResponse(BaseModel):
    timezone: str
    reminders: dict[str, Any]


class PreferencesUpdateRequest(BaseModel):
    timezone: Optional[str] = Field(default=None, max_length=64)
    reminders: Optional[dict[str, Any]] = None


def _measurement_item(row: Measurement) -> MeasurementItem:
    return MeasurementItem(
        id=row.id,
        day=row.measured_at.date(),
        metric_slug=row.metric.slug,
        metric_name=MetricsService.get_measurement_display_name(row),
        unit=row.metric.unit,
        value=measurement_value(row),
        display_value=MetricsService.format_measurement_value(row),
    )


@router.get("/metrics/definitions", response_model=MetricDefinitionListResponse)
def list_metric_definitions(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> MetricDefinitionListResponse:
    _ = user
    rows = MetricsService.list_metric_definitions(db)
    return MetricDefinitionListResponse(
        items=[MetricDefinitionItem.model_validate(row, from_attributes=True) for row in rows]
    )


@router.get("/metrics/enabled", response_model=EnabledMetricListResponse)
def list_enabled_metrics(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> EnabledMetricListResponse:
    items = MetricsService.get_user_enabled_metrics(db, user.id)
    return EnabledMetricListResponse(items=[EnabledMetricItem(**item) for item in items])


@router.put("/metrics/settings/{slug}", response_model=MetricSettingsResponse)
def update_metric_settings(
    slug: str,
    payload: MetricSettingsUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MetricSettingsResponse:
    changes: dict[str, Any] = {}
    if "enabled" in payload.model_fields_set and payload.enabled is not None:
        changes["enabled"] = payload.enabled
    if "target_value" in payload.model_fields_set:
        changes["target_value"] = payload.target_value
    if "unit_override" in payload.model_fields_set:
        changes["unit_override"] = payload.unit_override
    try:
        row = MetricsService.update_metric_settings(db, user.id, slug, **changes)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return MetricSettingsResponse(
        metric_slug=slug,
        enabled=row.enabled,
        target_value=row.target_value,
        unit_override=row.unit_override,
    )


@router.get("/metrics/weekly-progress", response_model=WeeklyProgressResponse)
def weekly_progress(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> WeeklyProgressResponse:
    rows = MetricsService.get_weekly_progress(db, user.id)
    return WeeklyProgressResponse(items=[WeeklyProgressItem(**row) for row in rows])


@router.post("/measurements", response_model=SaveMeasurementsResponse, status_code=status.HTTP_201_CREATED)
def save_measurements(
    payload: SaveMeasurementsRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> SaveMeasurementsResponse:
    try:
        result = MetricsService.save_measurements(
            db, user.id, payload.day, [entry.model_dump() for entry in payload.entries]
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return SaveMeasurementsResponse(count=result["count"])


@router.get("/measurements", response_model=MeasurementListResponse)
def list_recent_measurements(
    days: int = Query(default=7, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> MeasurementListResponse:
    rows = MetricsService.get_recent_measurements(db, user.id, days)
    return MeasurementListResponse(items=[_measurement_item(row) for row in rows])


@router.get("/measurements/today", response_model=MeasurementListResponse)
def list_todays_measurements(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> MeasurementListResponse:
    rows = MetricsService.get_todays_measurements(db, user.id)
    return MeasurementListResponse(items=[_measurement_item(row) for row in rows])


@router.get("/measurements/chart/{slug}", response_model=ChartResponse)
def chart_data(
    slug: str,
    days: int = Query(default=7, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ChartResponse:
    if not MetricsService.get_metric_by_slug(db, slug):
        raise HTTPException(status_code=404, detail=f"Metric not found: {slug}")
    points = MetricsService.get_chart_data(db, user.id, slug, days)
    return ChartResponse(metric_slug=slug, points=[ChartPoint(**point) for point in points])


@router.get("/preferences", response_model=PreferencesResponse)
def get_preferences(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> PreferencesResponse:
    row = MetricsService.get_user_preferences(db, user.id)
    return PreferencesResponse(timezone=row.timezone, reminders=reminders_of(row))


@router.put("/preferences", response_model=PreferencesResponse)
def update_preferences(
    payload: PreferencesUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> PreferencesResponse:
    row = MetricsService.update_user_preferences(
        db, user.id, timezone_name=payload.timezone, reminders=payload.reminders
    )
    return PreferencesResponse(timezone=row.timezone, reminders=reminders_of(row))
