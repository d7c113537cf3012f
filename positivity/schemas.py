from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .validation import MAX_CONTENT_LENGTH


class AnalysisResult(BaseModel):
    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    is_positive: bool
    score: int = Field(ge=0, le=100, strict=True)
    reason: str = Field(min_length=1)
    suggestion: Optional[str] = Field(
        default=None, min_length=1, max_length=MAX_CONTENT_LENGTH
    )

    @model_validator(mode="after")
    def check_suggestion(self) -> "AnalysisResult":
        if not self.reason.strip():
            raise ValueError("reason must not be blank")
        if self.is_positive and self.suggestion is not None:
            raise ValueError("positive results carry no suggestion")
        if not self.is_positive and (
            self.suggestion is None or not self.suggestion.strip()
        ):
            raise ValueError("negative results require a suggestion")
        return self


class AnalyzeRequest(BaseModel):
    # Left untyped so a missing or non-string value reaches validate_content
    # and is rejected as INVALID_INPUT rather than by body validation.
    content: Any = None
