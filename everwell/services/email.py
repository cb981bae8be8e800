import html
import logging
from datetime import date
from typing import Any, Optional, Protocol

import httpx
from sqlalchemy.orm import Session

from everwell.core import config
from everwell.db.models import Profile, User
from everwell.services.insights_service import InsightsService, ai_insight_to_dict
from everwell.services.metrics_service import MetricsService, reminders_of, utc_today

logger = logging.getLogger("uvicorn.error")

RESEND_API_URL = "https://api.resend.com/emails"
DAILY_SUBJECT = "Your Daily Health Reminder"
DISCLAIMER = "This email contains informational guidance only and is not medical advice."


class EmailSendError(RuntimeError):
    pass


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html_body: str, text_body: str) -> dict[str, Any]:
        ...


class ResendEmailSender:
    def __init__(self, api_key: Optional[str] = None, from_address: Optional[str] = None):
        self.api_key = api_key or config.resend_api_key()
        self.from_address = from_address or config.email_from()

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> dict[str, Any]:
        if not self.api_key:
            raise EmailSendError("RESEND_API_KEY environment variable is required")
        try:
            response = httpx.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={
                    "from": self.from_address,
                    "to": [to],
                    "subject": subject,
                    "html": html_body,
                    "text": text_body,
                },
                timeout=httpx.Timeout(15.0, connect=5.0),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = (exc.response.text or "").strip()[:220]
            raise EmailSendError(f"Resend request failed (status={exc.response.status_code}): {detail}") from exc
        except httpx.HTTPError as exc:
            raise EmailSendError(f"Resend request failed: {exc}") from exc
        return response.json()


def get_email_sender() -> EmailSender:
    return ResendEmailSender()


def _title(name: str) -> str:
    return name.replace("_", " ").title()


def build_daily_email(
    user_name: str,
    insight: Optional[dict[str, Any]],
    weekly_progress: list[dict[str, Any]],
    enabled_metrics: list[dict[str, Any]],
    base_url: str,
    today: date,
) -> dict[str, str]:
    """Render the daily reminder as {subject, html, text}. User content is HTML-escaped."""
    esc = html.escape
    date_label = today.strftime("%A, %B %d, %Y").replace(" 0", " ")

    html_parts = [
        "<!DOCTYPE html>",
        '<html><head><meta charset="utf-8"><title>Your Daily Health Reminder</title></head>',
        '<body style="font-family: sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto;">',
        f"<h1>Good morning, {esc(user_name)}!</h1>",
        f"<p>{esc(date_label)}</p>",
    ]
    text_parts = [f"Good morning, {user_name}!", "", date_label, ""]

    if insight:
        html_parts.append("<h2>Today's Health Insights</h2>")
        html_parts.append(f"<p><strong>Summary:</strong> {esc(insight.get('summary') or '')}</p>")
        text_parts.extend(["TODAY'S HEALTH INSIGHTS", insight.get("summary") or ""])
        actions = insight.get("actions") or []
        if actions:
            html_parts.append("<h3>Today's Focus Areas:</h3><ol>")
            html_parts.extend(f"<li>{esc(action)}</li>" for action in actions)
            html_parts.append("</ol>")
            text_parts.append("")
            text_parts.append("TODAY'S FOCUS AREAS:")
            text_parts.extend(f"{index}. {action}" for index, action in enumerate(actions, start=1))
    else:
        html_parts.append("<h2>Ready to Track Your Health?</h2>")
        html_parts.append(
            "<p>Start your day by logging your health metrics and get personalized insights "
            "to help you reach your goals.</p>"
        )
        text_parts.extend(
            [
                "READY TO TRACK YOUR HEALTH?",
                "Start your day by logging your health metrics and get personalized insights to help you reach your goals.",
            ]
        )
    text_parts.append("")

    if weekly_progress:
        html_parts.append("<h2>Weekly Progress</h2><ul>")
        text_parts.append("WEEKLY PROGRESS")
        for row in weekly_progress:
            current = f"{row['current_avg']:.1f}" if row.get("current_avg") is not None else "No data"
            target = row.get("target_value") or "No target"
            percent = f"{row['progress_percent']:.0f}%" if row.get("progress_percent") is not None else "N/A"
            line = f"{_title(row['metric_name'])}: {current} / {target} ({percent})"
            html_parts.append(f"<li>{esc(line)}</li>")
            text_parts.append(f"- {line}")
        html_parts.append("</ul>")
        text_parts.append("")

    html_parts.append("<h2>Today's Metrics to Track</h2>")
    html_parts.append(f"<p>You have <strong>{len(enabled_metrics)}</strong> metrics enabled:</p><ul>")
    html_parts.extend(f"<li>{esc(metric['name'])}</li>" for metric in enabled_metrics)
    html_parts.append("</ul>")
    text_parts.append(f"TODAY'S METRICS TO TRACK ({len(enabled_metrics)} enabled)")
    text_parts.extend(f"- {metric['name']}" for metric in enabled_metrics)
    text_parts.append("")

    dashboard_url = f"{base_url}/dashboard"
    html_parts.append(f'<p><a href="{esc(dashboard_url)}">Log Today\'s Metrics</a></p>')
    html_parts.append(
        f"<hr><p><strong>EverWell</strong> - Your personal health companion</p><p>{DISCLAIMER}</p>"
        f'<p><a href="{esc(base_url)}/settings">Manage email preferences</a></p>'
    )
    html_parts.append("</body></html>")
    text_parts.extend([f"Log today's metrics: {dashboard_url}", "", DISCLAIMER])

    return {"subject": DAILY_SUBJECT, "html": "\n".join(html_parts), "text": "\n".join(text_parts)}


def send_daily_email(db: Session, user: User, sender: EmailSender) -> bool:
    """Send the daily reminder to one user.

    Users who have not turned on the daily_email reminder are never mailed,
    whichever route asked; the call returns False without touching the sender.
    """
    preferences = MetricsService.get_user_preferences(db, user.id)
    if not reminders_of(preferences).get("daily_email"):
        return False

    profile = db.query(Profile).filter(Profile.user_id == user.id).first()
    user_name = (profile.full_name if profile else None) or user.email.split("@")[0]
    content = build_daily_email(
        user_name=user_name,
        insight=ai_insight_to_dict(InsightsService.get_ai_insight(db, user.id)),
        weekly_progress=MetricsService.get_weekly_progress(db, user.id),
        enabled_metrics=MetricsService.get_user_enabled_metrics(db, user.id),
        base_url=config.app_base_url(),
        today=utc_today(),
    )
    sender.send(user.email, content["subject"], content["html"], content["text"])
    logger.info("Daily email sent to user_id=%s", user.id)
    return True
