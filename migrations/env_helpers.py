"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without triggering
alembic.context at import time.
"""

from __future__ import annotations

import os
from urllib.parse import quote_plus, urlparse, urlunparse

_DRIVER_PREFIX = "postgresql+psycopg2://"


def _parse_libpq_dsn(dsn: str) -> dict[str, str]:
    """Parse a libpq key=value DSN (values may be single-quoted)."""
    tokens: dict[str, str] = {}
    i, n = 0, len(dsn)
    while i < n:
        while i < n and dsn[i] == " ":
            i += 1
        if i >= n:
            break
        eq = dsn.find("=", i)
        if eq == -1:
            break
        key = dsn[i:eq].strip()
        i = eq + 1
        if i < n and dsn[i] == "'":
            i += 1
            chars: list[str] = []
            while i < n and dsn[i] != "'":
                if dsn[i] == "\\" and i + 1 < n:
                    i += 1
                chars.append(dsn[i])
                i += 1
            i += 1  # closing quote
            tokens[key] = "".join(chars)
        else:
            end = dsn.find(" ", i)
            end = n if end == -1 else end
            tokens[key] = dsn[i:end]
            i = end
    return tokens


def libpq_dsn_to_url(dsn: str) -> str:
    """Convert "dbname=x user=y host=z" into a SQLAlchemy URL.

    A host starting with "/" is a unix socket directory and is passed as a
    query parameter.
    """
    tokens = _parse_libpq_dsn(dsn)
    password = tokens.get("password") or os.environ.get("DB_PASSWORD", "")
    user = quote_plus(tokens.get("user", ""))
    credentials = f"{user}:{quote_plus(password)}" if password else user
    dbname = quote_plus(tokens.get("dbname", ""))
    host = tokens.get("host", "localhost")

    if host.startswith("/"):
        return f"{_DRIVER_PREFIX}{credentials}@/{dbname}?host={quote_plus(host)}"
    port = tokens.get("port", "5432")
    return f"{_DRIVER_PREFIX}{credentials}@{host}:{port}/{dbname}"


def normalize_database_url(url: str) -> str:
    """Accept postgres://, postgresql:// or libpq DSNs; return a psycopg2 URL."""
    if "://" not in url:
        return libpq_dsn_to_url(url)
    for scheme in ("postgres://", "postgresql://"):
        if url.startswith(scheme):
            url = _DRIVER_PREFIX + url[len(scheme):]
            break

    db_password = os.environ.get("DB_PASSWORD", "")
    parsed = urlparse(url)
    if db_password and parsed.username and not parsed.password:
        netloc = f"{quote_plus(parsed.username)}:{quote_plus(db_password)}@{parsed.hostname}"
        if parsed.port:
            netloc += f":{parsed.port}"
        url = urlunparse(parsed._replace(netloc=netloc))
    return url


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    return normalize_database_url(url)
