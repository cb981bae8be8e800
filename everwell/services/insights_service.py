import json
from datetime import date, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from everwell.core.errors import log_error
from everwell.core.metric_values import day_start
from everwell.db.models import AIInsight, DerivedFeatures, Measurement, MetricDefinition, Profile, utcnow
from everwell.services.llm import InsightsProvider
from everwell.services.metrics_service import MetricsService, utc_today

FEATURE_FIELDS = (
    "weight_lbs",
    "waist_in",
    "bmi",
    "waist_to_height",
    "avg7_weight_lbs",
    "avg30_weight_lbs",
    "trend_weight_30d",
    "steps",
    "sleep_hours",
    "water_oz",
)

DAILY_SYSTEM_PROMPT = """You are a supportive health coach providing motivational, non-clinical guidance. Your role is to:

1. Be encouraging and positive - Focus on progress and achievements
2. Provide actionable advice - Give specific, achievable next steps
3. Stay non-medical - No diagnoses, treatments, or medical recommendations
4. Be concise - Keep summaries under 120 words
5. Personalize - Consider the user's goals and patterns
6. Focus on habits - Emphasize sustainable lifestyle changes

This is informational guidance only, not medical advice. Avoid specific medical recommendations or diagnoses.

Return JSON only with keys: summary (string), actions (list of exactly 3 strings), risk_flags (list of strings, may be empty)."""

WEEKLY_SYSTEM_PROMPT = """You are a supportive health coach creating a weekly focus plan. Your role is to:

1. Analyze weekly progress - Review the user's performance against their goals
2. Identify key focus areas - Pick 3 specific areas that need attention this week
3. Provide actionable guidance - Give clear, achievable steps for each focus area
4. Stay encouraging - Frame everything positively and motivationally

This is informational guidance only, not medical advice.

Output Format (JSON):
{
  "summary": "Brief overview of the week's focus areas (max 100 words)",
  "actions": ["Focus area 1", "Focus area 2", "Focus area 3"],
  "risk_flags": ["Any concerning patterns that warrant attention (optional)"]
}"""

FALLBACK_WEEKLY_PLAN = {
    "summary": "Based on your weekly progress, here are three key areas to focus on this week.",
    "actions": [
        "Review your daily tracking consistency and set reminders for any missed days",
        "Focus on the metric that's furthest from your target and create a specific action plan",
        "Celebrate your progress and identify one new healthy habit to add this week",
    ],
    "risk_flags": [],
}


def get_last_monday(today: Optional[date] = None) -> date:
    current = today or utc_today()
    return current - timedelta(days=current.weekday())


def least_squares_slope(points: list[tuple[float, float]]) -> Optional[float]:
    if len(points) < 2:
        return None
    n = len(points)
    mean_x = sum(x for x, _ in points) / n
    mean_y = sum(y for _, y in points) / n
    denominator = sum((x - mean_x) ** 2 for x, _ in points)
    if denominator == 0:
        return None
    return sum((x - mean_x) * (y - mean_y) for x, y in points) / denominator


def _average(values: list[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def derived_features_to_dict(row: Optional[DerivedFeatures]) -> Optional[dict[str, Any]]:
    if row is None:
        return None
    data: dict[str, Any] = {"day": row.day.isoformat()}
    for field in FEATURE_FIELDS:
        data[field] = getattr(row, field)
    return data


def ai_insight_to_dict(row: Optional[AIInsight]) -> Optional[dict[str, Any]]:
    if row is None:
        return None
    return {
        "day": row.day.isoformat(),
        "summary": row.summary,
        "actions": json.loads(row.actions_json or "[]"),
        "risk_flags": json.loads(row.risk_flags_json or "[]"),
        "created_at": row.created_at.isoformat(),
    }


def calculate_trends(recent: list[dict[str, Any]]) -> dict[str, Optional[float]]:
    """Seven-day averages over rollups ordered newest first."""

    def values(field: str) -> list[float]:
        return [row[field] for row in recent if row.get(field) is not None]

    latest = recent[0] if recent else {}
    return {
        "weight_7d_avg": _average(values("weight_lbs")),
        "weight_30d_avg": latest.get("avg30_weight_lbs"),
        "weight_trend": latest.get("trend_weight_30d"),
        "sleep_7d_avg": _average(values("sleep_hours")),
        "water_7d_avg": _average(values("water_oz")),
        "steps_7d_avg": _average(values("steps")),
    }


def _fmt(value: Optional[float], digits: int = 1) -> Optional[str]:
    if value is None:
        return None
    return f"{value:.{digits}f}"


def _fmt_steps(value: Optional[float]) -> Optional[str]:
    return f"{int(round(value)):,}" if value else None


def build_daily_prompt(profile: Optional[Profile], insights_data: dict[str, Any]) -> str:
    today = insights_data.get("today")
    trends = insights_data.get("trends") or {}
    recent = insights_data.get("recent") or []

    if today:
        today_metrics = ", ".join(
            [
                f"Weight: {today['weight_lbs']} lbs" if today.get("weight_lbs") else "Weight: Not recorded",
                f"BMI: {_fmt(today.get('bmi'))}" if today.get("bmi") else "BMI: Not calculated",
                f"Steps: {_fmt_steps(today.get('steps'))}" if today.get("steps") else "Steps: Not recorded",
                f"Sleep: {today['sleep_hours']} hours" if today.get("sleep_hours") else "Sleep: Not recorded",
                f"Water: {today['water_oz']} oz" if today.get("water_oz") else "Water: Not recorded",
            ]
        )
    else:
        today_metrics = "No metrics recorded today"

    recent_trends = ", ".join(
        [
            f"7-day weight avg: {_fmt(trends.get('weight_7d_avg')) + ' lbs' if trends.get('weight_7d_avg') else 'Not available'}",
            f"7-day sleep avg: {_fmt(trends.get('sleep_7d_avg')) + ' hours' if trends.get('sleep_7d_avg') else 'Not available'}",
            f"7-day water avg: {_fmt(trends.get('water_7d_avg'), 0) + ' oz' if trends.get('water_7d_avg') else 'Not available'}",
            f"7-day steps avg: {_fmt_steps(trends.get('steps_7d_avg')) or 'Not available'}",
        ]
    )

    slope = trends.get("weight_trend")
    if not slope:
        weight_trend = "No weight trend data"
    elif slope > 0:
        weight_trend = f"Weight trending up (+{slope:.2f} lbs/day)"
    else:
        weight_trend = f"Weight trending down ({slope:.2f} lbs/day)"

    last_days = "; ".join(
        f"{row['day']}: Weight {str(row['weight_lbs']) + ' lbs' if row.get('weight_lbs') else 'No data'}, "
        f"Steps {_fmt_steps(row.get('steps')) or 'No data'}"
        for row in recent[:3]
    )

    return f"""Generate a daily health insight for this user based on their data.

User Profile:
- Age: {(profile.age if profile else None) or 'Not specified'}
- Sex: {(profile.sex if profile else None) or 'Not specified'}
- Height: {(profile.height_in if profile else None) or 'Not specified'} inches
- Goals: {(profile.goals if profile else None) or 'General wellness'}

Today's Metrics:
{today_metrics}

Recent Trends (7-day averages):
{recent_trends}

30-day Weight Trend:
{weight_trend}

Last 3 Days Summary:
{last_days or 'No recent data'}

Keep the summary under 120 words, give 3 specific actions for today or tomorrow, and keep risk flags gentle and non-medical."""


def build_weekly_prompt(
    profile: Optional[Profile], weekly_progress: list[dict[str, Any]], derived: list[dict[str, Any]]
) -> str:
    progress_lines = "\n".join(
        f"- {row['metric_name']}: {_fmt(row.get('current_avg')) or 'No data'} / "
        f"{row.get('target_value') or 'No target'} "
        f"({_fmt(row.get('progress_percent'), 0) + '%' if row.get('progress_percent') else 'N/A'})"
        for row in weekly_progress
    )
    day_lines = "\n".join(
        f"- {row['day']}: Weight {row.get('weight_lbs') or 'N/A'}lbs, Steps {row.get('steps') or 'N/A'}, "
        f"Sleep {row.get('sleep_hours') or 'N/A'}hrs, Water {row.get('water_oz') or 'N/A'}oz"
        for row in derived
    )
    return f"""Generate a weekly health focus plan for this user based on their recent progress and goals.

User Profile:
- Age: {(profile.age if profile else None) or 'Not specified'}
- Sex: {(profile.sex if profile else None) or 'Not specified'}
- Height: {(profile.height_in if profile else None) or 'Not specified'} inches
- Goals: {(profile.goals if profile else None) or 'Not specified'}

Weekly Progress Summary:
{progress_lines or '- No numeric metrics logged this week'}

Last 7 Days Data:
{day_lines or '- No daily rollups yet'}

Identify which metrics are below target, consider patterns in the data, and generate a weekly plan with 3 focused action items."""


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


class InsightsService:
    @staticmethod
    def _numeric_by_day(
        db: Session, user_id: int, slug: str, start: date, end: date
    ) -> dict[date, float]:
        rows = (
            db.query(Measurement.measured_at, Measurement.value_numeric)
            .join(MetricDefinition, Measurement.metric_id == MetricDefinition.id)
            .filter(
                Measurement.user_id == user_id,
                MetricDefinition.slug == slug,
                Measurement.value_numeric.isnot(None),
                Measurement.measured_at >= day_start(start),
                Measurement.measured_at < day_start(end + timedelta(days=1)),
            )
            .order_by(Measurement.measured_at.asc())
            .all()
        )
        return {measured_at.date(): value for measured_at, value in rows}

    @staticmethod
    def _latest_on_or_before(db: Session, user_id: int, slug: str, day: date) -> Optional[float]:
        row = (
            db.query(Measurement.value_numeric)
            .join(MetricDefinition, Measurement.metric_id == MetricDefinition.id)
            .filter(
                Measurement.user_id == user_id,
                MetricDefinition.slug == slug,
                Measurement.value_numeric.isnot(None),
                Measurement.measured_at < day_start(day + timedelta(days=1)),
            )
            .order_by(Measurement.measured_at.desc())
            .first()
        )
        return row[0] if row else None

    @staticmethod
    def calculate_derived_features(db: Session, user_id: int, target_day: Optional[date] = None) -> DerivedFeatures:
        day = target_day or utc_today()
        profile = db.query(Profile).filter(Profile.user_id == user_id).first()
        height = profile.height_in if profile and profile.height_in else None

        weight = InsightsService._latest_on_or_before(db, user_id, "weight_lbs", day)
        waist = InsightsService._latest_on_or_before(db, user_id, "waist_in", day)
        weights_30d = InsightsService._numeric_by_day(db, user_id, "weight_lbs", day - timedelta(days=29), day)
        weights_7d = [value for logged, value in weights_30d.items() if logged >= day - timedelta(days=6)]
        trend_points = [(float((logged - day).days), value) for logged, value in weights_30d.items()]

        def on_day(slug: str) -> Optional[float]:
            return InsightsService._numeric_by_day(db, user_id, slug, day, day).get(day)

        values = {
            "weight_lbs": weight,
            "waist_in": waist,
            "bmi": round(703.0 * weight / (height**2), 2) if weight and height else None,
            "waist_to_height": round(waist / height, 3) if waist and height else None,
            "avg7_weight_lbs": _average(weights_7d),
            "avg30_weight_lbs": _average(list(weights_30d.values())),
            "trend_weight_30d": least_squares_slope(trend_points),
            "steps": on_day("steps"),
            "sleep_hours": on_day("sleep_hours"),
            "water_oz": on_day("water_oz"),
        }

        row = (
            db.query(DerivedFeatures)
            .filter(DerivedFeatures.user_id == user_id, DerivedFeatures.day == day)
            .first()
        )
        if not row:
            row = DerivedFeatures(user_id=user_id, day=day)
            db.add(row)
        for field, value in values.items():
            setattr(row, field, value)
        row.created_at = utcnow()
        db.commit()
        db.refresh(row)
        return row

    @staticmethod
    def get_derived_features(db: Session, user_id: int, days: int = 30) -> list[DerivedFeatures]:
        since = utc_today() - timedelta(days=days)
        return (
            db.query(DerivedFeatures)
            .filter(DerivedFeatures.user_id == user_id, DerivedFeatures.day >= since)
            .order_by(DerivedFeatures.day.desc())
            .all()
        )

    @staticmethod
    def get_today_derived_features(db: Session, user_id: int) -> Optional[DerivedFeatures]:
        return (
            db.query(DerivedFeatures)
            .filter(DerivedFeatures.user_id == user_id, DerivedFeatures.day == utc_today())
            .first()
        )

    @staticmethod
    def get_ai_insight(db: Session, user_id: int, day: Optional[date] = None) -> Optional[AIInsight]:
        return (
            db.query(AIInsight)
            .filter(AIInsight.user_id == user_id, AIInsight.day == (day or utc_today()))
            .first()
        )

    @staticmethod
    def save_ai_insight(db: Session, user_id: int, day: date, insight: dict[str, Any]) -> AIInsight:
        row = db.query(AIInsight).filter(AIInsight.user_id == user_id, AIInsight.day == day).first()
        if not row:
            row = AIInsight(user_id=user_id, day=day)
            db.add(row)
        row.summary = str(insight.get("summary") or "")
        row.actions_json = json.dumps(_string_list(insight.get("actions")))
        row.risk_flags_json = json.dumps(_string_list(insight.get("risk_flags")))
        row.created_at = utcnow()
        db.commit()
        db.refresh(row)
        return row

    @staticmethod
    def get_insights_data(db: Session, user_id: int) -> dict[str, Any]:
        recent = [
            derived_features_to_dict(row) for row in InsightsService.get_derived_features(db, user_id, days=7)
        ]
        return {
            "today": derived_features_to_dict(InsightsService.get_today_derived_features(db, user_id)),
            "recent": recent,
            "ai_insight": ai_insight_to_dict(InsightsService.get_ai_insight(db, user_id)),
            "trends": calculate_trends(recent),
        }

    @staticmethod
    def generate_ai_insight(db: Session, user_id: int, provider: InsightsProvider) -> dict[str, Any]:
        """Recompute today's rollup, ask the model for a daily insight and store it.

        Provider failures propagate as LLMRequestError; output that is not a
        {summary, actions} object raises ValueError.
        """
        today = utc_today()
        InsightsService.calculate_derived_features(db, user_id, today)
        insights_data = InsightsService.get_insights_data(db, user_id)
        profile = db.query(Profile).filter(Profile.user_id == user_id).first()

        raw = provider.generate_json(DAILY_SYSTEM_PROMPT, build_daily_prompt(profile, insights_data), 500)
        summary = str(raw.get("summary") or "").strip()
        if not summary or not isinstance(raw.get("actions"), list):
            log_error("generate_ai_insight.parse", {"message": "Invalid insight format"}, user_id=user_id)
            raise ValueError("Invalid insight format")

        insight = {
            "summary": summary,
            "actions": _string_list(raw.get("actions"))[:3],
            "risk_flags": _string_list(raw.get("risk_flags")),
        }
        InsightsService.save_ai_insight(db, user_id, today, insight)
        return insight

    @staticmethod
    def generate_weekly_plan(db: Session, user_id: int, provider: InsightsProvider) -> dict[str, Any]:
        today = utc_today()
        profile = db.query(Profile).filter(Profile.user_id == user_id).first()
        weekly_progress = MetricsService.get_weekly_progress(db, user_id, today)
        derived = [
            derived_features_to_dict(row)
            for row in reversed(InsightsService.get_derived_features(db, user_id, days=7))
        ]

        try:
            raw = provider.generate_json(
                WEEKLY_SYSTEM_PROMPT, build_weekly_prompt(profile, weekly_progress, derived), 600
            )
            plan = {
                "summary": str(raw.get("summary") or "").strip(),
                "actions": _string_list(raw.get("actions")),
                "risk_flags": _string_list(raw.get("risk_flags")),
            }
            if not plan["summary"] or not plan["actions"]:
                raise ValueError("Invalid weekly plan format")
        except ValueError as exc:
            log_error("generate_weekly_plan.parse", exc, user_id=user_id)
            plan = {
                "summary": FALLBACK_WEEKLY_PLAN["summary"],
                "actions": list(FALLBACK_WEEKLY_PLAN["actions"]),
                "risk_flags": [],
            }

        InsightsService.save_ai_insight(db, user_id, get_last_monday(today), plan)
        return plan
