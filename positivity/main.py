import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from slowapi.errors import RateLimitExceeded

from . import auth
from .config import ENVIRONMENT
from .database import Base, engine
from .errors import GeminiError, http_status_for
from .gemini import GeminiService
from .schemas import AnalysisResult, AnalyzeRequest
from .security import limiter, load_monitor, rate_limit, setup_security

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # A missing GEMINI_API_KEY aborts startup here
    gemini = GeminiService()
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        app.state.gemini = gemini
        load_monitor.start()
        logger.info("Server started (environment=%s)", ENVIRONMENT)
        yield
    finally:
        await load_monitor.stop()
        await gemini.aclose()


app = FastAPI(title="Positivity API", lifespan=lifespan)
app.state.limiter = limiter
setup_security(app)
app.include_router(auth.router)


def get_gemini_service(request: Request) -> GeminiService:
    return request.app.state.gemini


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    response = JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests",
            "message": "Too many requests. Please try again later.",
        },
    )
    return request.app.state.limiter._inject_headers(
        response, request.state.view_rate_limit
    )


@app.exception_handler(GeminiError)
async def gemini_error_handler(request: Request, exc: GeminiError):
    status_code = http_status_for(exc.code)
    if status_code >= 500:
        logger.error("Analysis failed: %s (%s)", exc.message, exc.code.value)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code.value, "message": exc.message},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/hello")
@rate_limit
async def hello(request: Request, response: Response):
    return {
        "message": "Hello World!",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": ENVIRONMENT,
    }


@app.get("/auth-status")
@rate_limit
async def auth_status(request: Request, response: Response):
    return {
        "message": "Auth.js is configured",
        "providers": ["Google", "GitHub"],
        "endpoints": {
            "signin": "/auth/signin",
            "signout": "/auth/signout",
            "session": "/auth/session",
            "providers": "/auth/providers",
            "csrf": "/auth/csrf",
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/api/analyze")
@rate_limit
async def analyze(
    request: Request,
    body: AnalyzeRequest,
    session: auth.SessionInfo = Depends(auth.require_auth),
    gemini: GeminiService = Depends(get_gemini_service),
):
    result: AnalysisResult = await gemini.analyze_positivity(body.content)
    return JSONResponse(content=result.model_dump(by_alias=True, exclude_none=True))
