"""Small DB helper: Postgres when DATABASE_URL is set, SQLite otherwise.

Statements are written with ``?`` placeholders and rewritten for psycopg.
Every call opens its own connection, so the helper is safe to use from the
worker threads the repositories run in.
"""
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, List, Tuple

DEFAULT_STATE_DB = "state.sqlite3"


class DB:
    def __init__(self, sqlite_path: str | None = None, dsn: str | None = None) -> None:
        self.dsn = dsn if dsn is not None else os.getenv("DATABASE_URL")
        self.sqlite_path = sqlite_path or os.getenv("RECEIPTDESK_STATE_DB", DEFAULT_STATE_DB)
        self.use_postgres = bool(self.dsn)

    @contextmanager
    def connect(self):
        if self.use_postgres:
            import psycopg

            conn = psycopg.connect(self.dsn)
        else:
            conn = sqlite3.connect(self.sqlite_path)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        with self.connect() as conn:
            cur = conn.cursor()
            yield cur
            conn.commit()

    def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> None:
        with self._transaction() as cur:
            cur.execute(self._prepare(sql), params)

    def executescript(self, statements: Iterable[str]) -> None:
        """Run DDL statements one by one in a single transaction."""
        with self._transaction() as cur:
            for statement in statements:
                cur.execute(self._prepare(statement))

    def fetchall_dict(self, sql: str, params: Tuple[Any, ...] = ()) -> List[dict]:
        with self._transaction() as cur:
            cur.execute(self._prepare(sql), params)
            columns = [col[0] for col in cur.description]
            return [dict(zip(columns, row)) for row in cur.fetchall()]

    def _prepare(self, sql: str) -> str:
        return sql.replace("?", "%s") if self.use_postgres else sql
