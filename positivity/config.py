import os

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import GeminiError, GeminiErrorCode

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

# --- Rate limiting ---
RATE_LIMIT_PER_IP = os.getenv("RATE_LIMIT_PER_IP", "100/15minutes")

# --- Load shedding ---
MAX_EVENT_LOOP_LAG_MS = int(os.getenv("MAX_EVENT_LOOP_LAG_MS", "70"))

# --- Proxies ---
# Comma-separated addresses (or "*") whose X-Forwarded-For is believed
TRUST_PROXY = os.getenv("TRUST_PROXY", "127.0.0.1")

# --- CORS ---
_LOCAL_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]


def cors_origins() -> list[str]:
    """Explicit allow-list; wildcards are never accepted."""
    configured = [
        os.getenv("FRONTEND_URL"),
        os.getenv("FRONTEND_STAGING_URL"),
        os.getenv("FRONTEND_PREVIEW_URL"),
    ]
    return [origin for origin in configured if origin] + _LOCAL_ORIGINS


def is_development() -> bool:
    return ENVIRONMENT == "development"


class GeminiConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_key: str = Field(repr=False)
    model: str = "gemini-2.0-flash"
    timeout_ms: int = Field(default=10_000, gt=0)
    max_retries: int = Field(default=3, gt=0)
    base_url: str = GEMINI_BASE_URL

    @field_validator("api_key")
    @classmethod
    def require_api_key(cls, v: str) -> str:
        # GeminiError is not a ValueError, so pydantic lets it propagate as-is
        if not v.strip():
            raise GeminiError(
                "Gemini API key must not be empty",
                GeminiErrorCode.AUTHENTICATION_ERROR,
            )
        return v

    @classmethod
    def from_env(cls) -> "GeminiConfig":
        api_key = os.getenv("GEMINI_API_KEY", "").strip()
        if not api_key:
            raise GeminiError(
                "GEMINI_API_KEY environment variable is required",
                GeminiErrorCode.AUTHENTICATION_ERROR,
            )

        return cls(
            api_key=api_key,
            model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            timeout_ms=int(os.getenv("GEMINI_TIMEOUT_MS", "10000")),
            max_retries=int(os.getenv("GEMINI_MAX_RETRIES", "3")),
        )
