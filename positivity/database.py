import os
import ssl
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


def asyncpg_url(url: str) -> tuple[str, dict]:
    """Rewrite a libpq-style URL for asyncpg.

    asyncpg rejects ``sslmode`` and ``channel_binding`` in the query string,
    so they are stripped and SSL is passed through ``connect_args`` instead.
    """
    parsed = urlparse(url)
    query_params = parse_qs(parsed.query)

    needs_ssl = query_params.pop("sslmode", [None])[0] == "require"
    query_params.pop("channel_binding", None)

    scheme = parsed.scheme
    if scheme in ("postgres", "postgresql"):
        scheme = "postgresql+asyncpg"

    clean = urlunparse(
        parsed._replace(scheme=scheme, query=urlencode(query_params, doseq=True))
    )
    connect_args = {"ssl": ssl.create_default_context()} if needs_ssl else {}
    return clean, connect_args


DATABASE_URL = os.getenv("DATABASE_URL", "")

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL environment variable is required.")

_url, _connect_args = asyncpg_url(DATABASE_URL)

engine = create_async_engine(
    _url, echo=False, pool_pre_ping=True, connect_args=_connect_args
)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass
