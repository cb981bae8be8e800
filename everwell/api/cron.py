import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from everwell.api.auth import get_optional_user
from everwell.core import config
from everwell.core.errors import log_error
from everwell.core.security import secrets_match
from everwell.db.models import Profile, User, UserPreferences
from everwell.db.session import get_db
from everwell.services.email import EmailSender, get_email_sender, send_daily_email
from everwell.services.insights_service import InsightsService
from everwell.services.llm import InsightsProvider, get_insights_provider
from everwell.services.metrics_service import reminders_of, utc_today

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["cron"])


class CronUserResult(BaseModel):
    user_id: int
    status: str
    insight: Optional[str] = None
    error: Optional[str] = None


class DailyInsightsCronResponse(BaseModel):
    message: str
    processed: int
    results: list[CronUserResult]


class DailyEmailResponse(BaseModel):
    success: bool = True
    sent: int
    skipped: int
    failed: int = 0


def _require_cron_bearer(request: Request) -> None:
    expected = config.cron_secret()
    header = request.headers.get("authorization") or ""
    provided = header[len("Bearer ") :] if header.startswith("Bearer ") else None
    if not expected or not secrets_match(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _run_daily_insights(db: Session, provider: Optional[InsightsProvider]) -> DailyInsightsCronResponse:
    today = utc_today()
    results: list[CronUserResult] = []
    for (user_id,) in db.query(Profile.user_id).order_by(Profile.user_id.asc()).all():
        try:
            InsightsService.calculate_derived_features(db, user_id, today)
            if provider is None:
                raise ValueError("OpenAI API key not configured")
            insight = InsightsService.generate_ai_insight(db, user_id, provider)
            summary = insight["summary"]
            results.append(
                CronUserResult(
                    user_id=user_id,
                    status="success",
                    insight=summary[:50] + "..." if len(summary) > 50 else summary,
                )
            )
        except Exception as exc:
            db.rollback()
            normalized = log_error("cron.daily_insights.user", exc, user_id=user_id)
            results.append(CronUserResult(user_id=user_id, status="error", error=normalized["message"]))

    logger.info("Daily insights cron processed %s users", len(results))
    return DailyInsightsCronResponse(
        message="Daily insights generation completed", processed=len(results), results=results
    )


@router.post("/cron/daily-insights", response_model=DailyInsightsCronResponse)
def daily_insights_cron(
    request: Request,
    provider: Optional[InsightsProvider] = Depends(get_insights_provider),
    db: Session = Depends(get_db),
) -> DailyInsightsCronResponse:
    _require_cron_bearer(request)
    return _run_daily_insights(db, provider)


@router.get("/cron/daily-insights", response_model=DailyInsightsCronResponse)
def daily_insights_cron_get(
    request: Request,
    provider: Optional[InsightsProvider] = Depends(get_insights_provider),
    db: Session = Depends(get_db),
) -> DailyInsightsCronResponse:
    if not config.is_development():
        raise HTTPException(status_code=405, detail="Method not allowed")
    _require_cron_bearer(request)
    return _run_daily_insights(db, provider)


def _opted_in_users(db: Session) -> list[User]:
    rows = (
        db.query(User, UserPreferences)
        .join(UserPreferences, UserPreferences.user_id == User.id)
        .order_by(User.id.asc())
        .all()
    )
    return [user for user, preferences in rows if reminders_of(preferences).get("daily_email")]


@router.post("/email/daily", response_model=DailyEmailResponse)
def send_daily_emails(
    request: Request,
    user: Optional[User] = Depends(get_optional_user),
    sender: EmailSender = Depends(get_email_sender),
    db: Session = Depends(get_db),
) -> DailyEmailResponse:
    expected = config.cron_secret()
    if expected and secrets_match(request.headers.get("CRON_SECRET"), expected):
        sent = failed = 0
        for recipient in _opted_in_users(db):
            try:
                send_daily_email(db, recipient, sender)
                sent += 1
            except Exception as exc:
                failed += 1
                log_error("email.daily.user", exc, user_id=recipient.id)
        return DailyEmailResponse(sent=sent, skipped=0, failed=failed)

    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        delivered = send_daily_email(db, user, sender)
    except Exception as exc:
        log_error("email.daily", exc, user_id=user.id)
        raise HTTPException(status_code=500, detail="Failed to send daily email")
    return DailyEmailResponse(sent=1 if delivered else 0, skipped=0 if delivered else 1)
