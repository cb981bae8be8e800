import hashlib
import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from everwell.core.config import INSIGHTS_CACHE_RETENTION_DAYS, INSIGHTS_CACHE_TTL_HOURS, INSIGHTS_DAILY_LIMIT
from everwell.core.errors import log_error
from everwell.db.models import InsightsCache, InsightsUsage, utcnow

USAGE_LIMITS = {
    "FREE_TIER": 5,
    "PREMIUM_TIER": 50,
    "UNLIMITED": -1,
}


def hash_payload(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def is_cache_valid(created_at: datetime, ttl_hours: float = 24, now: Optional[datetime] = None) -> bool:
    current = now or utcnow()
    if created_at.tzinfo is not None:
        created_at = created_at.astimezone(timezone.utc).replace(tzinfo=None)
    if current.tzinfo is not None:
        current = current.astimezone(timezone.utc).replace(tzinfo=None)
    return (current - created_at) < timedelta(hours=ttl_hours)


def is_usage_limit_exceeded(current_usage: int, limit: int) -> bool:
    if limit == -1:
        return False
    return current_usage >= limit


def _today() -> date:
    return datetime.now(timezone.utc).date()


class InsightsUsageService:
    """Daily usage counter and payload-hash cache for on-demand insights.

    Failures here never block insight generation, so every method logs and
    falls back to a permissive default.
    """

    @staticmethod
    def _today_count(db: Session, user_id: int) -> int:
        row = (
            db.query(InsightsUsage)
            .filter(InsightsUsage.user_id == user_id, InsightsUsage.day == _today())
            .first()
        )
        return row.count if row else 0

    @staticmethod
    def check_usage_limit(db: Session, user_id: int, daily_limit: Optional[int] = None) -> dict[str, Any]:
        limit = INSIGHTS_DAILY_LIMIT if daily_limit is None else daily_limit
        try:
            today_count = InsightsUsageService._today_count(db, user_id)
        except Exception as exc:
            log_error("check_usage_limit", exc, user_id=user_id)
            return {"today_count": 0, "daily_limit": limit, "can_generate": True}
        return {
            "today_count": today_count,
            "daily_limit": limit,
            "can_generate": not is_usage_limit_exceeded(today_count, limit),
        }

    @staticmethod
    def increment_usage(db: Session, user_id: int) -> None:
        try:
            today = _today()
            row = (
                db.query(InsightsUsage)
                .filter(InsightsUsage.user_id == user_id, InsightsUsage.day == today)
                .first()
            )
            if not row:
                row = InsightsUsage(user_id=user_id, day=today, count=0)
                db.add(row)
            row.count += 1
            db.commit()
        except Exception as exc:
            db.rollback()
            log_error("increment_usage", exc, user_id=user_id)

    @staticmethod
    def get_cached_insights(db: Session, user_id: int, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        try:
            row = (
                db.query(InsightsCache)
                .filter(
                    InsightsCache.user_id == user_id,
                    InsightsCache.cache_date == _today(),
                    InsightsCache.payload_hash == hash_payload(payload),
                )
                .first()
            )
            if not row:
                return None
            return {
                "content": json.loads(row.content_json),
                "created_at": row.created_at,
                "is_valid": is_cache_valid(row.created_at, INSIGHTS_CACHE_TTL_HOURS),
            }
        except Exception as exc:
            log_error("get_cached_insights", exc, user_id=user_id)
            return None

    @staticmethod
    def cache_insights(db: Session, user_id: int, payload: dict[str, Any], result: dict[str, Any]) -> None:
        try:
            payload_hash = hash_payload(payload)
            today = _today()
            row = (
                db.query(InsightsCache)
                .filter(
                    InsightsCache.user_id == user_id,
                    InsightsCache.cache_date == today,
                    InsightsCache.payload_hash == payload_hash,
                )
                .first()
            )
            if not row:
                row = InsightsCache(user_id=user_id, cache_date=today, payload_hash=payload_hash)
                db.add(row)
            row.content_json = json.dumps(result)
            row.created_at = utcnow()
            db.commit()
        except Exception as exc:
            db.rollback()
            log_error("cache_insights", exc, user_id=user_id)

    @staticmethod
    def clear_old_cache(db: Session, user_id: int) -> int:
        cutoff = _today() - timedelta(days=INSIGHTS_CACHE_RETENTION_DAYS)
        try:
            deleted = (
                db.query(InsightsCache)
                .filter(InsightsCache.user_id == user_id, InsightsCache.cache_date < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted
        except Exception as exc:
            db.rollback()
            log_error("clear_old_cache", exc, user_id=user_id)
            return 0

    @staticmethod
    def get_usage_stats(db: Session, user_id: int) -> dict[str, int]:
        today = _today()
        week_ago = today - timedelta(days=7)
        month_ago = today - timedelta(days=30)
        try:
            rows = (
                db.query(InsightsUsage)
                .filter(InsightsUsage.user_id == user_id, InsightsUsage.day >= month_ago)
                .order_by(InsightsUsage.day.desc())
                .all()
            )
        except Exception as exc:
            log_error("get_usage_stats", exc, user_id=user_id)
            return {"today_count": 0, "weekly_count": 0, "monthly_count": 0}
        return {
            "today_count": next((row.count for row in rows if row.day == today), 0),
            "weekly_count": sum(row.count for row in rows if row.day >= week_ago),
            "monthly_count": sum(row.count for row in rows),
        }
