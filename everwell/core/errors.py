import logging
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger("uvicorn.error")


class ReasonCode(str, Enum):
    not_authenticated = "not_authenticated"
    no_openai_key = "no_openai_key"
    not_enough_data = "not_enough_data"
    rate_limit = "rate_limit"
    timeout = "timeout"
    invalid_api_key = "invalid_api_key"
    fetch_error = "fetch_error"
    server_error = "server_error"


REASON_STATUS: dict[ReasonCode, int] = {
    ReasonCode.not_authenticated: 401,
    ReasonCode.no_openai_key: 400,
    ReasonCode.not_enough_data: 400,
    ReasonCode.rate_limit: 429,
    ReasonCode.timeout: 500,
    ReasonCode.invalid_api_key: 500,
    ReasonCode.fetch_error: 500,
    ReasonCode.server_error: 500,
}


class InsightsApiError(Exception):
    """Raised by insight/plan handlers; rendered as {"ok": false, "reason", "message"}."""

    def __init__(self, reason: ReasonCode, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.status_code = status_code or REASON_STATUS[reason]

    def to_body(self) -> dict[str, Any]:
        return {"ok": False, "reason": self.reason.value, "message": self.message}


def normalize_error(err: Any) -> dict[str, Any]:
    if isinstance(err, dict):
        return {
            "message": str(err.get("message") or err.get("error") or err),
            "code": err.get("code") or err.get("status"),
            "status": err.get("status"),
        }
    return {
        "message": str(err) or err.__class__.__name__,
        "code": getattr(err, "code", None) or getattr(err, "status_code", None),
        "status": getattr(err, "status_code", None),
    }


def log_error(label: str, err: Any, **extra: Any) -> dict[str, Any]:
    normalized = normalize_error(err)
    logger.error("[%s] %s", label, {**extra, **normalized})
    return normalized
