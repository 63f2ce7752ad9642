"""
PostgreSQL连接与表结构

账户、代理和邮件缓存三张表由外部管理模块维护，这里只负责建表和连接封装
"""

import logging
from typing import Any, List, Optional, Tuple

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)


class PostgresConnection:
    """简化版PostgreSQL连接包装器，SQL中使用 ? 作为占位符。"""

    def __init__(self, dsn: str):
        self._conn = psycopg.connect(dsn, row_factory=dict_row)

    @staticmethod
    def _adapt_sql(sql: str) -> str:
        return sql.replace("?", "%s")

    def execute(self, sql: str, params: Optional[List[Any] | Tuple[Any, ...]] = None):
        adapted_sql = self._adapt_sql(sql)
        if params is None:
            return self._conn.execute(adapted_sql)
        return self._conn.execute(adapted_sql, tuple(params))

    def executemany(self, sql: str, params_seq: List[Tuple[Any, ...]]) -> None:
        with self._conn.cursor() as cursor:
            cursor.executemany(self._adapt_sql(sql), params_seq)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            try:
                self._conn.rollback()
            except psycopg.Error as rollback_error:
                logger.warning(f"Rollback failed: {rollback_error}")
        self._conn.close()
        return False


class ConnectionFactory:
    """按需创建PostgreSQL连接"""

    def __init__(self, dsn: str):
        self.dsn = dsn

    def __call__(self) -> PostgresConnection:
        return PostgresConnection(self.dsn)


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id SERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password TEXT NOT NULL DEFAULT '',
        client_id TEXT NOT NULL,
        refresh_token TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive', 'error')),
        last_synced_at INTEGER,
        token_refreshed_at INTEGER,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS proxies (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        type TEXT NOT NULL CHECK (type IN ('socks5', 'http')),
        host TEXT NOT NULL,
        port INTEGER NOT NULL,
        username TEXT NOT NULL DEFAULT '',
        password TEXT NOT NULL DEFAULT '',
        is_default INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mail_cache (
        id SERIAL PRIMARY KEY,
        account_id INTEGER NOT NULL REFERENCES accounts (id) ON DELETE CASCADE,
        mailbox TEXT NOT NULL DEFAULT 'INBOX' CHECK (mailbox IN ('INBOX', 'Junk')),
        mail_id TEXT NOT NULL DEFAULT '',
        sender TEXT NOT NULL DEFAULT '',
        sender_name TEXT NOT NULL DEFAULT '',
        subject TEXT NOT NULL DEFAULT '',
        text_content TEXT NOT NULL DEFAULT '',
        html_content TEXT NOT NULL DEFAULT '',
        mail_date TEXT NOT NULL DEFAULT '',
        cached_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_mail_cache_account
    ON mail_cache (account_id, mailbox, mail_date DESC)
    """,
    # 只有带稳定ID的记录参与upsert，无ID的记录直接追加
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_mail_cache_identity
    ON mail_cache (account_id, mailbox, mail_id)
    WHERE mail_id <> ''
    """,
)


def init_schema(connect: ConnectionFactory) -> None:
    """初始化表结构"""
    try:
        with connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            conn.commit()
    except psycopg.Error as e:
        logger.error(f"Failed to initialize PostgreSQL schema: {e}")
        raise
