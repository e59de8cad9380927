"""OpenAI-compatible categorization provider.

Implements the CategorizationProvider port on top of a chat completions
endpoint in JSON mode. Transport and status failures are translated into
budget_bridge.errors; retrying is left to the caller's RetryPolicy.

Privacy: prompts and raw bank descriptions are never logged at INFO level.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from typing import TYPE_CHECKING, Any

import httpx

from ..errors import (
    AuthenticationError,
    RateLimitError,
    ResponseParsingError,
    ServiceUnavailable,
)
from ..ports import CleanupResult, RuleSuggestion
from ..schemas.rules import PatternType
from ..schemas.transaction import clamp_confidence
from .prompts import CleanupPrompt

if TYPE_CHECKING:
    from ..config import LLMConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.7


class LLMConcurrencyLimiter:
    """Semaphore-based concurrency limiter for provider requests.

    Thread-safe for synchronous usage.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self._semaphore = threading.Semaphore(max_concurrent)
        self._active_count = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        """Acquire a slot. Returns False on timeout."""
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        if acquired:
            with self._lock:
                self._active_count += 1
        return acquired

    def release(self) -> None:
        with self._lock:
            self._active_count -= 1
        self._semaphore.release()

    @property
    def active_requests(self) -> int:
        with self._lock:
            return self._active_count


def parse_json_response(content: str) -> dict[str, Any]:
    """Parse JSON from a model response, tolerating common formatting noise.

    Handles markdown code fences, text around the JSON object, trailing
    commas and control characters.

    Raises:
        ResponseParsingError: If no JSON object can be recovered
    """
    if not content or not content.strip():
        raise ResponseParsingError("Empty response from provider")

    text = content.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    candidates = [text]
    # Outermost { ... } block, allowing one level of nesting (rule_suggestion)
    match = re.search(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}", text, re.DOTALL)
    if match:
        candidates.append(match.group())

    for candidate in list(candidates):
        cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", candidate)
        cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
        candidates.append(cleaned)

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise ResponseParsingError("Provider response is not a JSON object", raw_payload=content)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none"):
        return None
    return text


def _float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class OpenAICategorizationProvider:
    """Payee cleanup and categorization through an OpenAI-compatible API."""

    def __init__(self, llm_config: LLMConfig, categories: list[str] | None = None) -> None:
        """
        Args:
            llm_config: Provider settings (URL, key, model, timeouts, concurrency)
            categories: Allowed category names; suggestions outside it are dropped
        """
        self.llm_config = llm_config
        self.categories = categories or []
        self._prompt = CleanupPrompt()

        self._client = httpx.Client(
            base_url=llm_config.base_url.rstrip("/"),
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(llm_config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers={
                "Authorization": f"Bearer {llm_config.api_key}",
                "Content-Type": "application/json",
            },
        )
        self._limiter = LLMConcurrencyLimiter(max_concurrent=llm_config.max_concurrent)

    def set_categories(self, categories: list[str]) -> None:
        self.categories = categories

    @property
    def active_requests(self) -> int:
        return self._limiter.active_requests

    def close(self) -> None:
        self._client.close()

    def _match_category(self, raw: str | None) -> str | None:
        """Case-insensitive match against the allowed categories."""
        if not raw:
            return None
        if not self.categories:
            return raw
        lowered = raw.strip().lower()
        for category in self.categories:
            if category.lower() == lowered:
                return category
        logger.warning("Provider suggested category '%s' outside the category list", raw)
        return None

    def _complete(self, system_prompt: str, user_message: str) -> str:
        """Send one chat completion and return the message content."""
        if not self._limiter.acquire(timeout=float(self.llm_config.timeout_seconds)):
            raise ServiceUnavailable(
                f"Timed out waiting for a provider slot (max={self.llm_config.max_concurrent})"
            )

        try:
            payload = {
                "model": self.llm_config.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                "temperature": self.llm_config.temperature,
                "response_format": {"type": "json_object"},
            }
            logger.debug("Calling model %s at %s", self.llm_config.model, self.llm_config.base_url)

            try:
                response = self._client.post("/chat/completions", json=payload)
            except httpx.TimeoutException as e:
                raise ServiceUnavailable(
                    f"Provider request timed out after {self.llm_config.timeout_seconds}s"
                ) from e
            except httpx.RequestError as e:
                raise ServiceUnavailable(f"Provider request failed: {e}") from e

            status = response.status_code
            if status in (401, 403):
                raise AuthenticationError("Provider rejected the API key")
            if status == 429:
                retry_after = response.headers.get("retry-after")
                raise RateLimitError(
                    "Provider rate limit exceeded",
                    retry_after=_float(retry_after, 0.0) if retry_after else None,
                )
            if status >= 400:
                raise ServiceUnavailable(f"Provider API error {status}")

            try:
                data = response.json()
                content = data["choices"][0]["message"]["content"]
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise ResponseParsingError(
                    "Unexpected chat completion shape", raw_payload=response.text
                ) from e

            logger.debug("Model %s returned %d chars", self.llm_config.model, len(content or ""))
            return content or ""
        finally:
            self._limiter.release()

    def cleanup(self, text: str, context: dict[str, str]) -> CleanupResult:
        """Clean a payee description and suggest a category (CategorizationProvider)."""
        user_message = self._prompt.format_user_message(text, context, self.categories)
        data = parse_json_response(self._complete(self._prompt.system_prompt, user_message))

        payee = _optional_str(data.get("cleaned_payee")) or text
        confidence = clamp_confidence(_float(data.get("confidence"), DEFAULT_CONFIDENCE))
        payee_confidence = data.get("payee_confidence")

        return CleanupResult(
            original=text,
            payee=payee,
            category=self._match_category(_optional_str(data.get("category"))),
            confidence=confidence,
            memo=_optional_str(data.get("memo")),
            payee_confidence=(
                clamp_confidence(_float(payee_confidence, confidence))
                if payee_confidence is not None
                else None
            ),
            rule_suggestion=self._parse_rule(data.get("rule_suggestion"), payee, confidence),
        )

    def _parse_rule(
        self, raw: Any, payee: str, confidence: float
    ) -> RuleSuggestion | None:
        if not isinstance(raw, dict):
            return None
        pattern = _optional_str(raw.get("pattern"))
        replacement = _optional_str(raw.get("replacement")) or payee
        if not pattern or not replacement:
            return None
        try:
            pattern_type = PatternType.parse(str(raw.get("pattern_type") or "CONTAINS"))
        except ValueError:
            pattern_type = PatternType.CONTAINS
        if pattern_type == PatternType.REGEX:
            try:
                re.compile(pattern)
            except re.error:
                logger.debug("Dropping rule suggestion with invalid regex")
                return None
        return RuleSuggestion(
            pattern=pattern,
            pattern_type=pattern_type,
            replacement=replacement,
            confidence=confidence,
            explanation=_optional_str(raw.get("explanation")),
        )
