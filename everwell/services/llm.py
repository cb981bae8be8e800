import json
import logging
import os
import re
import time
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from everwell.core import config
from everwell.core.errors import ReasonCode

logger = logging.getLogger("uvicorn.error")

OPENAI_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "25"))
OPENAI_HEALTH_TIMEOUT_SECONDS = float(os.getenv("OPENAI_HEALTH_TIMEOUT_SECONDS", "10"))
OPENAI_CONNECT_TIMEOUT_SECONDS = float(os.getenv("OPENAI_CONNECT_TIMEOUT_SECONDS", "10"))
INSIGHTS_MAX_TOKENS = 600

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

INSIGHTS_SYSTEM_PROMPT = """You are a supportive health coach analyzing daily health metrics. Your task is to provide personalized insights and recommendations.

IMPORTANT: Return JSON only, no prose, no markdown formatting.

Required JSON structure:
{
  "summary": "Brief summary of health patterns (max 120 words)",
  "recommendations": ["recommendation 1", "recommendation 2", "recommendation 3"],
  "observations": ["observation 1", "observation 2"]
}

Guidelines:
- Keep tone encouraging and supportive
- Focus on lifestyle and wellness improvements
- Do not make medical claims or give medical advice
- Provide 3-6 specific, actionable recommendations
- Include 2-5 gentle observations about patterns
- Use clear, actionable language"""


def _http_timeout(read_seconds: float) -> httpx.Timeout:
    return httpx.Timeout(
        connect=min(OPENAI_CONNECT_TIMEOUT_SECONDS, read_seconds),
        read=read_seconds,
        write=read_seconds,
        pool=read_seconds,
    )


class LLMRequestError(RuntimeError):
    def __init__(
        self,
        reason: ReasonCode,
        provider: str,
        model: str,
        message: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.provider = provider
        self.model = model
        self.status_code = status_code


class InsightsResult(BaseModel):
    summary: str = Field(min_length=1)
    recommendations: list[str] = Field(min_length=3, max_length=6)
    observations: list[str] = Field(min_length=2, max_length=5)

    @field_validator("summary")
    @classmethod
    def _summary_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Summary is required")
        return value

    @field_validator("recommendations", "observations")
    @classmethod
    def _items_not_blank(cls, value: list[str]) -> list[str]:
        if any(not item.strip() for item in value):
            raise ValueError("Items cannot be empty")
        return value


FALLBACK_INSIGHTS = InsightsResult(
    summary="Your health data shows consistent tracking. Keep up the great work!",
    recommendations=[
        "Continue tracking your daily metrics",
        "Set small, achievable goals for the week",
        "Stay consistent with your routine",
    ],
    observations=[
        "Consistent tracking is a great foundation for health improvement",
        "Small, daily actions lead to meaningful long-term results",
    ],
)


def parse_llm_json(raw_text: str) -> dict[str, Any]:
    text = (raw_text or "").strip()
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    fenced = _FENCE_PATTERN.search(text)
    if fenced:
        try:
            parsed = json.loads(fenced.group(1).strip())
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise ValueError("Invalid JSON response from LLM")


def parse_insights_response(content: str) -> InsightsResult:
    try:
        return InsightsResult.model_validate(parse_llm_json(content))
    except (ValueError, ValidationError) as exc:
        logger.warning("Failed to parse AI insights response: %s | raw=%s", exc, (content or "")[:500])
        return FALLBACK_INSIGHTS.model_copy(deep=True)


def log_llm_event(
    provider: str,
    model: str,
    prompt_chars: int,
    latency_ms: int,
    parsed: bool,
    error: Optional[str] = None,
) -> None:
    logger.info(
        "[ai] provider=%s model=%s promptChars=%s latencyMs=%s parsed=%s%s",
        provider,
        model,
        prompt_chars,
        latency_ms,
        parsed,
        f" error={error}" if error else "",
    )


def build_insights_user_prompt(payload: dict[str, Any]) -> str:
    return (
        f"Here are the user's daily health metrics for the past {payload.get('days')} days:\n\n"
        f"{json.dumps(payload.get('dataByDate', {}), indent=2)}\n\n"
        "Please analyze this data and provide insights as requested. "
        "Return only valid JSON matching the required structure."
    )


class InsightsProvider(Protocol):
    provider_name: str
    model: str

    def generate_insights(self, payload: dict[str, Any]) -> InsightsResult:
        ...

    def generate_json(self, system_prompt: str, user_prompt: str, max_tokens: int = 500) -> dict[str, Any]:
        ...

    def ping(self) -> dict[str, Any]:
        ...


class OpenAIInsightsProvider:
    provider_name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: float = OPENAI_TIMEOUT_SECONDS,
    ):
        key = api_key or config.openai_api_key()
        if not key:
            raise ValueError("OPENAI_API_KEY environment variable is required")
        self.api_key = key
        self.model = model or config.openai_model()
        self.base_url = (base_url or config.openai_base_url()).rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _chat(
        self,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float = 0.7,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        try:
            response = httpx.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
                timeout=_http_timeout(timeout_seconds or self.timeout_seconds),
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise LLMRequestError(
                reason=ReasonCode.timeout,
                provider=self.provider_name,
                model=self.model,
                message="Request timeout - please try again",
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 401:
                reason, message = ReasonCode.invalid_api_key, "Invalid API key - please check your OpenAI configuration"
            elif status == 429:
                reason, message = ReasonCode.rate_limit, "Rate limit exceeded - please try again later"
            else:
                detail = (exc.response.text or "").strip()[:220]
                reason, message = ReasonCode.server_error, f"OpenAI API error: {status} {detail or 'no response body'}"
            raise LLMRequestError(
                reason=reason,
                provider=self.provider_name,
                model=self.model,
                message=message,
                status_code=status,
            ) from exc
        except httpx.HTTPError as exc:
            raise LLMRequestError(
                reason=ReasonCode.fetch_error,
                provider=self.provider_name,
                model=self.model,
                message=f"OpenAI request failed: {str(exc)[:220]}",
            ) from exc

        try:
            data = response.json()
            choices = data.get("choices") if isinstance(data, dict) else None
            content = ""
            if choices:
                content = str((choices[0].get("message") or {}).get("content") or "").strip()
        except (ValueError, AttributeError, TypeError, IndexError) as exc:
            raise LLMRequestError(
                reason=ReasonCode.server_error,
                provider=self.provider_name,
                model=self.model,
                message="Unexpected response format from OpenAI",
                status_code=response.status_code,
            ) from exc
        if not content:
            raise LLMRequestError(
                reason=ReasonCode.server_error,
                provider=self.provider_name,
                model=self.model,
                message="No content received from OpenAI",
            )
        return content

    def generate_insights(self, payload: dict[str, Any]) -> InsightsResult:
        user_prompt = build_insights_user_prompt(payload)
        prompt_chars = len(INSIGHTS_SYSTEM_PROMPT) + len(user_prompt)
        started = time.monotonic()
        try:
            content = self._chat(
                [
                    {"role": "system", "content": INSIGHTS_SYSTEM_PROMPT},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=INSIGHTS_MAX_TOKENS,
            )
        except LLMRequestError as exc:
            log_llm_event(
                self.provider_name, self.model, prompt_chars, int((time.monotonic() - started) * 1000), False, str(exc)
            )
            raise
        result = parse_insights_response(content)
        log_llm_event(self.provider_name, self.model, prompt_chars, int((time.monotonic() - started) * 1000), True)
        return result

    def generate_json(self, system_prompt: str, user_prompt: str, max_tokens: int = 500) -> dict[str, Any]:
        prompt_chars = len(system_prompt) + len(user_prompt)
        started = time.monotonic()
        try:
            content = self._chat(
                [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens,
            )
            parsed = parse_llm_json(content)
        except (LLMRequestError, ValueError) as exc:
            log_llm_event(
                self.provider_name,
                self.model,
                prompt_chars,
                int((time.monotonic() - started) * 1000),
                False,
                str(exc),
            )
            raise
        log_llm_event(self.provider_name, self.model, prompt_chars, int((time.monotonic() - started) * 1000), True)
        return parsed

    def ping(self) -> dict[str, Any]:
        """Ask the model to echo {"ok":true}; never raises."""
        result: dict[str, Any] = {
            "attempted": True,
            "status": None,
            "latency_ms": None,
            "parsed_json": None,
            "error": None,
        }
        started = time.monotonic()
        try:
            content = self._chat(
                [
                    {
                        "role": "system",
                        "content": (
                            'You are a test assistant. Return exactly {"ok":true} and nothing else. '
                            "No explanation, no markdown, just the JSON."
                        ),
                    },
                    {"role": "user", "content": 'Return exactly {"ok":true}'},
                ],
                max_tokens=10,
                temperature=0,
                timeout_seconds=OPENAI_HEALTH_TIMEOUT_SECONDS,
            )
            result["status"] = 200
            try:
                result["parsed_json"] = parse_llm_json(content).get("ok") is True
            except ValueError:
                result["parsed_json"] = False
            if not result["parsed_json"]:
                result["error"] = 'Response did not contain {"ok":true}'
        except LLMRequestError as exc:
            result["status"] = exc.status_code
            result["error"] = str(exc)
        result["latency_ms"] = int((time.monotonic() - started) * 1000)
        return result


def get_insights_provider() -> Optional[InsightsProvider]:
    if not config.openai_api_key():
        return None
    return OpenAIInsightsProvider()
