from datetime import date, timedelta
from typing import Iterable, NamedTuple, Optional


class DayValue(NamedTuple):
    day: date
    slug: str
    value: Optional[float]


def _window(points: Iterable[DayValue], slug: str, today: date, days: int) -> list[DayValue]:
    start = today - timedelta(days=days - 1)
    return sorted(
        (point for point in points if point.slug == slug and point.value is not None and start <= point.day <= today),
        key=lambda point: point.day,
    )


def weekly_average(points: Iterable[DayValue], slug: str, today: date) -> Optional[float]:
    values = [point.value for point in _window(points, slug, today, 7)]
    if not values:
        return None
    return round(sum(values) / len(values), 2)


def weight_delta(points: Iterable[DayValue], today: date, slug: str = "weight_lbs") -> Optional[float]:
    series = _window(points, slug, today, 7)
    if len(series) < 2:
        return None
    return round(series[-1].value - series[0].value, 2)


def current_streak(logged_days: Iterable[date], today: date) -> int:
    """Consecutive logged days ending today, or yesterday while today is still empty."""
    days = set(logged_days)
    cursor = today if today in days else today - timedelta(days=1)
    streak = 0
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def sparkline_series(
    points: Iterable[DayValue], slugs: Iterable[str], today: date, days: int = 7
) -> dict[str, list[dict[str, object]]]:
    points = list(points)
    return {
        slug: [{"date": point.day.isoformat(), "value": point.value} for point in _window(points, slug, today, days)]
        for slug in slugs
    }


def build_dashboard_summary(
    points: Iterable[DayValue],
    logged_days: Iterable[date],
    enabled_slugs: Iterable[str],
    today: date,
    primary_slug: str = "steps",
) -> dict[str, object]:
    points = list(points)
    return {
        "primary_metric": primary_slug,
        "weekly_avg": weekly_average(points, primary_slug, today),
        "weight_delta": weight_delta(points, today),
        "sleep_avg": weekly_average(points, "sleep_hours", today),
        "current_streak": current_streak(logged_days, today),
        "sparklines": sparkline_series(points, enabled_slugs, today),
    }
