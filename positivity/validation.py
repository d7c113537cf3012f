"""Input and response checks for the Gemini analysis service.

Every check raises ``GeminiError`` on failure and has no side effects;
logging and presentation belong to the caller.
"""

from typing import Any, Tuple, Union

from .errors import GeminiError, GeminiErrorCode

# Shared upper bound for user content and generated suggestions
MAX_CONTENT_LENGTH = 1000
MIN_CONTENT_LENGTH = 1


def validate_content(content: Any) -> None:
    """Check user content before it is sent to Gemini.

    The lower bound is measured after stripping, the upper bound on the raw
    string, so whitespace padding still counts toward the limit.
    """
    if not isinstance(content, str):
        raise GeminiError("Content must be a string", GeminiErrorCode.INVALID_INPUT)

    if len(content.strip()) < MIN_CONTENT_LENGTH:
        raise GeminiError("Content is too short", GeminiErrorCode.INVALID_INPUT)

    if len(content) > MAX_CONTENT_LENGTH:
        raise GeminiError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters",
            GeminiErrorCode.INVALID_INPUT,
        )


def _is_number(value: Any) -> bool:
    # bool is an int subclass but never a valid score
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_analysis_response(data: Any) -> Tuple[Union[int, float], str]:
    """Check a decoded analysis payload and return ``(score, reason)``.

    Types are not coerced: ``"85"`` is rejected, not converted.
    """
    if not isinstance(data, dict):
        raise GeminiError(
            "Invalid response format from Gemini API", GeminiErrorCode.PARSING_ERROR
        )

    score = data.get("score")
    reason = data.get("reason")

    # Written as a chained range so NaN is rejected too
    if not _is_number(score) or not (0 <= score <= 100):
        raise GeminiError(
            "Invalid score in Gemini API response", GeminiErrorCode.PARSING_ERROR
        )

    if not isinstance(reason, str) or not reason.strip():
        raise GeminiError(
            "Invalid reason in Gemini API response", GeminiErrorCode.PARSING_ERROR
        )

    return score, reason


def validate_suggestion(suggestion: Any) -> None:
    if not isinstance(suggestion, str) or not suggestion.strip():
        raise GeminiError("Invalid suggestion format", GeminiErrorCode.PARSING_ERROR)

    if len(suggestion) > MAX_CONTENT_LENGTH:
        raise GeminiError(
            "Suggestion exceeds maximum length", GeminiErrorCode.PARSING_ERROR
        )
