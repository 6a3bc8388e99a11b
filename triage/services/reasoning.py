from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx
from opentelemetry import trace
from pydantic import ValidationError

from triage.core.config import Settings
from triage.schemas.items import CandidateItem
from triage.schemas.moderation import CONSERVATIVE_FALLBACK, ModerationResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SYSTEM_PROMPT = (
    "You are the content moderator for a liberation platform run for and by Black queer and trans "
    "people in the UK. You assess submitted events, news and resources for relevance to Black "
    "QTIPOC+ communities. Always respond with a single JSON object and nothing else."
)

RUBRIC = """Evaluation rubric:

1. relevance (is this specifically for Black QTIPOC+ people?)
   - high: explicitly Black and LGBTQ+ (e.g. Black trans liberation, QTIPOC gathering)
   - medium: one but not both (Black community event, or LGBTQ+ event without a Black focus)
   - low: general diversity/inclusion with no specific focus
2. quality (is this legitimate and safe?)
   - high: verified organization or well-known community group
   - medium: known local or grassroots group
   - low: unknown source, suspicious content, possible spam
3. liberation_score 0-1 (alignment with Black queer liberation values)
   - high: community-led, anti-racist, mutual aid, activism, healing, grassroots organizing
   - medium: progressive and supportive but not liberation-focused
   - low: corporate, apolitical, or potentially harmful to marginalized communities
4. flags: list every red flag that applies, using these labels
   - fetishization (fetishization or exoticization of Black bodies)
   - pride-washing (corporate Pride-washing or rainbow capitalism)
   - exclusionary-group (TERF, SWERF or other exclusionary organizers)
   - corporate-training (diversity training aimed at corporations, not community)
   - cost-barrier (high cost that excludes working-class people)
   - possible-spam (vague description that could be spam)

Recommendation:
- "auto-approve": confidence >= 0.90 with high relevance, high quality and no flags
- "review": confidence 0.70-0.89 with medium or high relevance
- "reject": clearly off-topic or harmful

Respond only with JSON in exactly this shape:
{"confidence": 0.95, "relevance": "high", "quality": "high", "liberation_score": 0.9,
 "reasoning": "one or two sentences", "recommendation": "auto-approve", "flags": []}
"""


class ReasoningServiceError(Exception):
    """Raised when the reasoning service times out, fails, or returns output that breaks the contract."""


def build_moderation_prompt(item: CandidateItem) -> str:
    lines = [
        f"Analyze this {item.type} for the platform.",
        "",
        "Content to analyze:",
        f'- Title: "{item.title}"',
        f'- Description: "{item.description}"',
        f'- Organizer/Source: "{item.organizer_name or "Unknown"}"',
        f"- Tags: {', '.join(item.tags) if item.tags else 'None'}",
        f'- Location: "{item.location or "Not specified"}"',
        f'- Source URL: "{item.source_url}"',
    ]
    if item.occurrence_date:
        lines.append(f'- Date: "{item.occurrence_date}"')
    if item.price:
        lines.append(f'- Price: "{item.price}"')
    lines.extend(["", RUBRIC])
    return "\n".join(lines)


def parse_moderation_response(payload: Any) -> ModerationResult:
    if not isinstance(payload, dict):
        raise ReasoningServiceError("response body is not a JSON object")

    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ReasoningServiceError("response has no choices")
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content.strip():
        raise ReasoningServiceError("response has empty content")

    try:
        decoded = json.loads(_strip_code_fence(content))
    except json.JSONDecodeError as exc:
        raise ReasoningServiceError("response content is not valid JSON") from exc
    if not isinstance(decoded, dict):
        raise ReasoningServiceError("response content is not a JSON object")

    flags = decoded.get("flags")
    if isinstance(flags, list) and not all(isinstance(flag, str) for flag in flags):
        raise ReasoningServiceError("flags must be a list of strings")

    try:
        return ModerationResult.model_validate(decoded)
    except ValidationError as exc:
        raise ReasoningServiceError(f"response violates moderation contract: {exc.error_count()} errors") from exc


class ReasoningAdapter:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        timeout_seconds: float = 15.0,
        temperature: float = 0.3,
        max_tokens: int = 600,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> ReasoningAdapter:
        return cls(
            base_url=settings.reasoning_base_url,
            api_key=settings.reasoning_api_key,
            model=settings.reasoning_model,
            timeout_seconds=settings.reasoning_timeout_seconds,
            temperature=settings.reasoning_temperature,
            max_tokens=settings.reasoning_max_tokens,
            client=client,
        )

    async def evaluate(self, item: CandidateItem) -> ModerationResult:
        """Judge one item; any failure yields the conservative fallback instead of raising."""
        with tracer.start_as_current_span("reasoning.evaluate") as span:
            span.set_attribute("item.type", item.type)
            try:
                result = await asyncio.wait_for(self._request(item), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("reasoning service timed out after %.1fs title=%r", self.timeout_seconds, item.title)
                span.set_attribute("reasoning.fallback", True)
                return CONSERVATIVE_FALLBACK
            except ReasoningServiceError as exc:
                logger.warning("reasoning service failed title=%r error=%s", item.title, exc)
                span.set_attribute("reasoning.fallback", True)
                return CONSERVATIVE_FALLBACK

            span.set_attribute("reasoning.fallback", False)
            span.set_attribute("reasoning.confidence", result.confidence)
            return result

    async def _request(self, item: CandidateItem) -> ModerationResult:
        if not self.api_key:
            raise ReasoningServiceError("reasoning API key is not configured")

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_moderation_prompt(item)},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/chat/completions"

        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise ReasoningServiceError(f"transport error: {exc.__class__.__name__}") from exc

        if response.status_code != 200:
            raise ReasoningServiceError(f"unexpected status {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise ReasoningServiceError("response body is not valid JSON") from exc

        return parse_moderation_response(payload)


def _strip_code_fence(content: str) -> str:
    stripped = content.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.lower().startswith("json"):
            stripped = stripped[4:]
    return stripped.strip()
