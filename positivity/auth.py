import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel
from sqlalchemy import select

from .database import SessionLocal
from .models import Session
from .security import auth_rate_limit

logger = logging.getLogger(__name__)

# Cookie names used by Auth.js; the __Secure- prefix is set over HTTPS
SESSION_COOKIE_NAMES = ("__Secure-authjs.session-token", "authjs.session-token")

router = APIRouter(prefix="/api/auth", tags=["auth"])


class SessionUser(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    image: Optional[str] = None


class SessionInfo(BaseModel):
    user: SessionUser
    expires: datetime


def session_token(request: Request) -> Optional[str]:
    for name in SESSION_COOKIE_NAMES:
        token = request.cookies.get(name)
        if token:
            return token
    return None


async def load_session(token: str) -> Optional[SessionInfo]:
    async with SessionLocal() as db:
        result = await db.execute(select(Session).where(Session.session_token == token))
        row = result.scalar_one_or_none()

    if row is None or row.expires <= datetime.utcnow():
        logger.debug("No active session for presented token")
        return None

    user = row.user
    return SessionInfo(
        user=SessionUser(id=user.id, name=user.name, email=user.email, image=user.image),
        expires=row.expires,
    )


async def get_session(request: Request) -> Optional[SessionInfo]:
    token = session_token(request)
    if not token:
        return None
    return await load_session(token)


async def require_auth(
    session: Optional[SessionInfo] = Depends(get_session),
) -> SessionInfo:
    if session is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return session


@router.get("/session")
@auth_rate_limit
async def read_session(
    request: Request,
    response: Response,
    session: Optional[SessionInfo] = Depends(get_session)
):
    return {"session": session}


@router.get("/me")
@auth_rate_limit
async def me(
    request: Request,
    response: Response,
    session: SessionInfo = Depends(require_auth),
):
    return {"user": session.user}
