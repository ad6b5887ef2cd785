from __future__ import annotations

import os
from urllib.parse import urlparse, urlunparse

import psycopg2


def _normalize_psycopg2_url(db_url: str) -> str:
    parsed = urlparse(db_url)
    if "+" in parsed.scheme:
        parsed = parsed._replace(scheme=parsed.scheme.split("+", 1)[0])
    return urlunparse(parsed)


def default_db_url() -> str:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise RuntimeError("DATABASE_URL is not set")
    return db_url


def connect(db_url: str):
    conn = psycopg2.connect(_normalize_psycopg2_url(db_url))
    conn.autocommit = False
    return conn
