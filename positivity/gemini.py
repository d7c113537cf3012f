import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import httpx

from .config import GeminiConfig
from .errors import GeminiError, GeminiErrorCode
from .schemas import AnalysisResult
from .validation import (
    validate_analysis_response,
    validate_content,
    validate_suggestion,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BACKOFF_MS = 8000

# Greedy: first "{" through last "}" so leading/trailing prose is tolerated
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

POSITIVITY_PROMPT = """\
You are an expert at judging how positive a social media post is.
Score the post from 0 to 100 using the following rubric:

High scores (70-100):
- Expresses gratitude, joy or hope
- Constructive and forward-looking
- Shows consideration or kindness toward others
- Shows learning or personal growth

Middle scores (40-69):
- Neutral information sharing
- Objective statements of fact
- Mild complaints or minor troubles

Low scores (0-39):
- Strong criticism, grumbling or negative emotion
- Aggressive language or personal attacks
- Hopeless content
- Wording likely to make others uncomfortable

Post: "{content}"

Respond ONLY with JSON in this exact structure (no other text):
{{
  "score": 85,
  "reason": "Expresses gratitude and a positive outlook that leaves readers with a good impression"
}}"""

SUGGESTION_PROMPT = """\
You are an expert at rewriting posts into more positive, constructive wording.

Keep the intent of the original post and improve it as follows:
- Turn negative expressions into positive ones
- Turn criticism into constructive suggestions
- Calm down emotional wording
- Make sure readers will not feel uncomfortable
- Keep roughly the same length as the original

Original post: "{content}"

Reply with the rewritten post only, with no explanation or preamble:"""


class GeminiHTTPError(Exception):
    """Non-2xx response from the Generative Language API."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def _http_error_message(response: httpx.Response) -> str:
    # Surface the actual Gemini API error: message, status and ErrorInfo reasons
    try:
        body = response.json()
    except ValueError:
        return f"Gemini API error ({response.status_code}): {response.text}"

    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return f"Gemini API error ({response.status_code}): {response.text}"

    parts = [error.get("status", ""), error.get("message", "")]
    for detail in error.get("details", []):
        if isinstance(detail, dict) and detail.get("reason"):
            parts.append(detail["reason"])
    detail_text = " ".join(p for p in parts if p) or response.reason_phrase
    return f"Gemini API error ({response.status_code}): {detail_text}"


def _candidate_text(data: Any) -> str:
    try:
        parts = data["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return ""
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


class GeminiService:
    """Positivity analysis backed by the Gemini generateContent endpoint.

    Every failure leaving this class is a ``GeminiError``. The configuration
    is fixed at construction; a missing API key fails here rather than on the
    first request.
    """

    POSITIVE_THRESHOLD = 70

    def __init__(
        self,
        config: Optional[GeminiConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config if config is not None else GeminiConfig.from_env()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._sleep = sleep

    @property
    def url(self) -> str:
        return f"{self.config.base_url}/models/{self.config.model}:generateContent"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def analyze_positivity(self, content: str) -> AnalysisResult:
        validate_content(content)

        prompt = POSITIVITY_PROMPT.format(content=content)
        response = await self._with_retry(lambda: self._make_gemini_request(prompt))
        score, reason = self._parse_analysis_response(response)

        is_positive = score >= self.POSITIVE_THRESHOLD
        suggestion = None
        if not is_positive:
            suggestion = await self.generate_suggestion(content)

        logger.info("Positivity analysis complete (score=%d)", score)
        return AnalysisResult(
            is_positive=is_positive,
            score=score,
            reason=reason,
            suggestion=suggestion,
        )

    async def generate_suggestion(self, content: str) -> str:
        validate_content(content)

        prompt = SUGGESTION_PROMPT.format(content=content)

        async def operation() -> str:
            suggestion = await self._make_gemini_request(prompt)
            validate_suggestion(suggestion)
            return suggestion.strip()

        return await self._with_retry(operation)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parse_analysis_response(self, response: str) -> Tuple[int, str]:
        """Extract and validate the ``{"score", "reason"}`` object in a reply."""
        match = _JSON_OBJECT.search(response)
        if not match:
            raise GeminiError(
                "Failed to parse Gemini API response: No JSON found in response",
                GeminiErrorCode.PARSING_ERROR,
            )

        try:
            data = json.loads(match.group(0))
            score, reason = validate_analysis_response(data)
        except (ValueError, GeminiError) as exc:
            message = exc.message if isinstance(exc, GeminiError) else str(exc)
            raise GeminiError(
                f"Failed to parse Gemini API response: {message}",
                GeminiErrorCode.PARSING_ERROR,
            ) from exc

        if isinstance(score, float):
            if not score.is_integer():
                raise GeminiError(
                    "Failed to parse Gemini API response: score must be an integer",
                    GeminiErrorCode.PARSING_ERROR,
                )
            score = int(score)

        return score, reason

    async def _post(self, prompt: str) -> httpx.Response:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": 0.1,
                "maxOutputTokens": 1000,
            },
        }
        response = await self._client.post(
            self.url,
            headers={"x-goog-api-key": self.config.api_key},
            json=payload,
        )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise GeminiHTTPError(
                _http_error_message(exc.response), exc.response.status_code
            ) from exc
        return response

    async def _make_gemini_request(self, prompt: str) -> str:
        """Single generateContent call bounded by the configured timeout."""
        try:
            response = await asyncio.wait_for(
                self._post(prompt), timeout=self.config.timeout_ms / 1000
            )
            text = _candidate_text(response.json())
            if not text.strip():
                raise GeminiError(
                    "Empty response from Gemini API",
                    GeminiErrorCode.SERVICE_UNAVAILABLE,
                )
            return text.strip()
        except GeminiError:
            raise
        except Exception as exc:
            raise self._handle_gemini_error(exc) from exc

    def _handle_gemini_error(self, error: BaseException) -> GeminiError:
        """Map any failure onto a GeminiError.

        Checked in order: already typed, timeout, authentication, rate
        limit, service unavailable, unknown.
        """
        if isinstance(error, GeminiError):
            return error

        status_code = getattr(error, "status_code", None)

        if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
            return GeminiError(
                "Gemini API request timed out", GeminiErrorCode.TIMEOUT_ERROR
            )

        message = str(error).lower()

        if "api_key" in message or "api key" in message or "authentication" in message:
            return GeminiError(
                "Gemini API authentication failed",
                GeminiErrorCode.AUTHENTICATION_ERROR,
                status_code,
            )

        if "rate limit" in message or "quota" in message:
            return GeminiError(
                "Gemini API rate limit exceeded",
                GeminiErrorCode.RATE_LIMIT_ERROR,
                status_code,
            )

        if "service unavailable" in message or "503" in message:
            return GeminiError(
                "Gemini API service unavailable",
                GeminiErrorCode.SERVICE_UNAVAILABLE,
                status_code,
            )

        logger.warning("Unclassified Gemini API failure: %r", error)
        return GeminiError(
            "Unknown error occurred while calling Gemini API",
            GeminiErrorCode.UNKNOWN_ERROR,
            status_code,
        )

    async def _with_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` with exponential backoff (1s, 2s, 4s ... capped at 8s)."""
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.config.max_retries:
                    logger.warning(
                        "Gemini request failed after %d attempt(s): %s", attempt, exc
                    )
                    raise

                if isinstance(exc, GeminiError) and not exc.retryable:
                    raise

                delay_ms = min(1000 * 2 ** (attempt - 1), MAX_BACKOFF_MS)
                logger.warning(
                    "Gemini request attempt %d failed (%s); retrying in %dms",
                    attempt,
                    exc,
                    delay_ms,
                )
                await self._sleep(delay_ms / 1000)
                attempt += 1
