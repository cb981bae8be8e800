import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session, joinedload

from everwell.core.errors import log_error
from everwell.core.metric_values import (
    MetricValue,
    RawValue,
    day_start,
    measurement_value,
    parse_metric_value,
    render_value,
)
from everwell.db.models import Measurement, MetricDefinition, UserMetricSetting, UserPreferences, utcnow

_UNSET: Any = object()

DEFAULT_REMINDERS: dict[str, Any] = {"daily_email": False}


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def reminders_of(preferences: Optional[UserPreferences]) -> dict[str, Any]:
    if preferences is None or not preferences.reminders_json:
        return dict(DEFAULT_REMINDERS)
    try:
        loaded = json.loads(preferences.reminders_json)
    except json.JSONDecodeError:
        return dict(DEFAULT_REMINDERS)
    if not isinstance(loaded, dict):
        return dict(DEFAULT_REMINDERS)
    return {**DEFAULT_REMINDERS, **loaded}


class MetricsService:
    """Query helpers for metric definitions, per-user settings, measurements and preferences."""

    @staticmethod
    def list_metric_definitions(db: Session) -> list[MetricDefinition]:
        return db.query(MetricDefinition).order_by(MetricDefinition.sort_order.asc()).all()

    @staticmethod
    def get_metric_by_slug(db: Session, slug: str) -> Optional[MetricDefinition]:
        return db.query(MetricDefinition).filter(MetricDefinition.slug == slug).first()

    @staticmethod
    def get_metric_id_by_slug(db: Session, slug: str) -> Optional[int]:
        metric = MetricsService.get_metric_by_slug(db, slug)
        if not metric:
            log_error("get_metric_id_by_slug", {"message": "Could not find metric ID"}, slug=slug)
            return None
        return metric.id

    @staticmethod
    def get_user_enabled_metrics(db: Session, user_id: int) -> list[dict[str, Any]]:
        settings = {
            row.metric_id: row
            for row in db.query(UserMetricSetting).filter(UserMetricSetting.user_id == user_id).all()
        }
        enabled: list[dict[str, Any]] = []
        for metric in MetricsService.list_metric_definitions(db):
            setting = settings.get(metric.id)
            is_enabled = setting.enabled if setting else metric.default_enabled
            if not is_enabled:
                continue
            enabled.append(
                {
                    "id": metric.id,
                    "slug": metric.slug,
                    "name": metric.name,
                    "unit": metric.unit,
                    "unit_override": setting.unit_override if setting else None,
                    "input_kind": metric.input_kind,
                    "min_value": metric.min_value,
                    "max_value": metric.max_value,
                    "step_value": metric.step_value,
                    "category": metric.category,
                    "default_enabled": metric.default_enabled,
                    "sort_order": metric.sort_order,
                    "enabled": True,
                    "target_value": setting.target_value if setting else None,
                }
            )
        return enabled

    @staticmethod
    def update_metric_settings(
        db: Session,
        user_id: int,
        slug: str,
        enabled: Optional[bool] = None,
        target_value: Optional[float] = _UNSET,
        unit_override: Optional[str] = _UNSET,
    ) -> UserMetricSetting:
        metric = MetricsService.get_metric_by_slug(db, slug)
        if not metric:
            raise LookupError(f"Metric not found: {slug}")
        row = (
            db.query(UserMetricSetting)
            .filter(UserMetricSetting.user_id == user_id, UserMetricSetting.metric_id == metric.id)
            .first()
        )
        if not row:
            row = UserMetricSetting(user_id=user_id, metric_id=metric.id, enabled=metric.default_enabled)
            db.add(row)
        if enabled is not None:
            row.enabled = enabled
        if target_value is not _UNSET:
            row.target_value = target_value
        if unit_override is not _UNSET:
            row.unit_override = (unit_override or "").strip() or None
        db.commit()
        db.refresh(row)
        return row

    @staticmethod
    def set_metric_enabled(db: Session, user_id: int, slug: str, enabled: bool) -> UserMetricSetting:
        return MetricsService.update_metric_settings(db, user_id, slug, enabled=enabled)

    @staticmethod
    def update_metric_target(db: Session, user_id: int, slug: str, target_value: Optional[float]) -> UserMetricSetting:
        return MetricsService.update_metric_settings(db, user_id, slug, target_value=target_value)

    @staticmethod
    def upsert_measurement(
        db: Session, user_id: int, metric: MetricDefinition, day: date, raw: RawValue
    ) -> Measurement:
        value = parse_metric_value(metric.input_kind, raw, metric.min_value, metric.max_value)
        return MetricsService.write_measurement(db, user_id, metric, day, value)

    @staticmethod
    def write_measurement(
        db: Session, user_id: int, metric: MetricDefinition, day: date, value: MetricValue
    ) -> Measurement:
        measured_at = day_start(day)
        row = (
            db.query(Measurement)
            .filter(
                Measurement.user_id == user_id,
                Measurement.metric_id == metric.id,
                Measurement.measured_at == measured_at,
            )
            .first()
        )
        if not row:
            row = Measurement(user_id=user_id, metric_id=metric.id, measured_at=measured_at)
            db.add(row)
            db.flush()
        row.value_numeric = value.value_numeric
        row.value_text = value.value_text
        row.value_bool = value.value_bool
        row.updated_at = utcnow()
        return row

    @staticmethod
    def save_measurements(
        db: Session, user_id: int, day: Optional[date], entries: Iterable[dict[str, Any]]
    ) -> dict[str, int]:
        """Upsert one value per metric for the day. Unknown slugs are skipped; bad values raise ValueError."""
        target_day = day or utc_today()
        count = 0
        for entry in entries:
            slug = str(entry.get("metric_slug") or "").strip()
            metric = MetricsService.get_metric_by_slug(db, slug)
            if not metric:
                log_error("save_measurements.metric_lookup", {"message": "Could not find metric ID"}, slug=slug)
                continue
            try:
                MetricsService.upsert_measurement(db, user_id, metric, target_day, entry.get("value"))
            except ValueError as exc:
                db.rollback()
                raise ValueError(f"{metric.slug}: {exc}") from exc
            count += 1
        db.commit()
        return {"count": count}

    @staticmethod
    def _measurements_since(db: Session, user_id: int, start: datetime):
        return (
            db.query(Measurement)
            .options(joinedload(Measurement.metric))
            .filter(Measurement.user_id == user_id, Measurement.measured_at >= start)
        )

    @staticmethod
    def get_recent_measurements(db: Session, user_id: int, days: int = 7) -> list[Measurement]:
        start = day_start(utc_today() - timedelta(days=days))
        return (
            MetricsService._measurements_since(db, user_id, start)
            .order_by(Measurement.measured_at.desc(), Measurement.metric_id.asc())
            .all()
        )

    @staticmethod
    def get_todays_measurements(db: Session, user_id: int) -> list[Measurement]:
        start = day_start(utc_today())
        return (
            MetricsService._measurements_since(db, user_id, start)
            .filter(Measurement.measured_at < start + timedelta(days=1))
            .order_by(Measurement.measured_at.asc(), Measurement.metric_id.asc())
            .all()
        )

    @staticmethod
    def get_measurements_with_metrics(db: Session, user_id: int, days: int = 30) -> list[Measurement]:
        start = day_start(utc_today() - timedelta(days=days))
        return (
            MetricsService._measurements_since(db, user_id, start)
            .order_by(Measurement.measured_at.asc(), Measurement.metric_id.asc())
            .all()
        )

    @staticmethod
    def get_weekly_measurements(db: Session, user_id: int) -> list[Measurement]:
        return MetricsService.get_measurements_with_metrics(db, user_id, days=7)

    @staticmethod
    def get_chart_data(db: Session, user_id: int, metric_slug: str, days: int = 7) -> list[dict[str, Any]]:
        # Look back at least 30 days so sparse series still render.
        start = day_start(utc_today() - timedelta(days=max(days, 30)))
        rows = (
            db.query(Measurement)
            .join(MetricDefinition, Measurement.metric_id == MetricDefinition.id)
            .filter(
                Measurement.user_id == user_id,
                MetricDefinition.slug == metric_slug,
                Measurement.measured_at >= start,
            )
            .order_by(Measurement.measured_at.asc())
            .all()
        )
        return [
            {"date": row.measured_at.date().isoformat(), "value": row.value_numeric or 0}
            for row in rows
        ]

    @staticmethod
    def get_user_preferences(db: Session, user_id: int) -> UserPreferences:
        row = db.query(UserPreferences).filter(UserPreferences.user_id == user_id).first()
        if row:
            return row
        row = UserPreferences(user_id=user_id, timezone="UTC", reminders_json=json.dumps(DEFAULT_REMINDERS))
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    @staticmethod
    def update_user_preferences(
        db: Session,
        user_id: int,
        timezone_name: Optional[str] = None,
        reminders: Optional[dict[str, Any]] = None,
    ) -> UserPreferences:
        row = MetricsService.get_user_preferences(db, user_id)
        if timezone_name is not None:
            row.timezone = timezone_name.strip() or "UTC"
        if reminders is not None:
            merged = {**reminders_of(row), **reminders}
            row.reminders_json = json.dumps(merged, separators=(",", ":"))
        row.updated_at = utcnow()
        db.commit()
        db.refresh(row)
        return row

    @staticmethod
    def get_weekly_progress(db: Session, user_id: int, today: Optional[date] = None) -> list[dict[str, Any]]:
        """Average each numeric metric over the seven days ending on `today`, inclusive."""
        end_day = today or utc_today()
        start = day_start(end_day - timedelta(days=6))
        end = day_start(end_day + timedelta(days=1))
        rows = (
            db.query(Measurement)
            .options(joinedload(Measurement.metric))
            .filter(
                Measurement.user_id == user_id,
                Measurement.measured_at >= start,
                Measurement.measured_at < end,
            )
            .order_by(Measurement.measured_at.asc())
            .all()
        )
        targets = {
            row.metric_id: row.target_value
            for row in db.query(UserMetricSetting).filter(UserMetricSetting.user_id == user_id).all()
        }

        buckets: dict[int, dict[str, Any]] = {}
        for row in rows:
            if row.value_numeric is None:
                continue
            bucket = buckets.setdefault(
                row.metric_id,
                {"metric": row.metric, "values": []},
            )
            bucket["values"].append(row.value_numeric)

        progress: list[dict[str, Any]] = []
        for metric_id, bucket in sorted(buckets.items(), key=lambda item: item[1]["metric"].sort_order):
            values = bucket["values"]
            current_avg = sum(values) / len(values)
            target = targets.get(metric_id)
            progress_percent = (current_avg / target) * 100.0 if target else None
            progress.append(
                {
                    "metric_slug": bucket["metric"].slug,
                    "metric_name": bucket["metric"].name,
                    "current_avg": round(current_avg, 2),
                    "target_value": target,
                    "progress_percent": round(progress_percent, 1) if progress_percent is not None else None,
                }
            )
        return progress

    @staticmethod
    def format_measurement_value(row: Measurement) -> str:
        value = measurement_value(row)
        if value is None:
            return "N/A"
        if isinstance(value, bool):
            return "Yes" if value else "No"
        if row.value_numeric is not None:
            unit = row.metric.unit if row.metric and row.metric.unit else ""
            return f"{render_value(value)}{unit}"
        return str(value)

    @staticmethod
    def get_measurement_display_name(row: Measurement) -> str:
        if row.metric and row.metric.name:
            return row.metric.name
        return "Unknown Metric"
