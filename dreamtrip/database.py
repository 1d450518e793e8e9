"""
データベース接続と初期化のユーティリティ。
Database connection and initialization utilities.
"""

import logging
import os
import time

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# ロギング設定
# Configure logging
logger = logging.getLogger(__name__)

# 環境変数からデータベースURLを取得（未設定ならローカルSQLite）
# Read database URL from environment (local SQLite when unset)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///dreamtrip.db")


def _engine_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    options = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
        # インメモリDBは全スレッドで1接続を共有する
        # In-memory databases must share one connection across threads
        options["poolclass"] = StaticPool
    return options


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def _db_init_lock_key() -> int:
    """
    DB初期化用のアドバイザリロックキーを取得する
    Get advisory lock key used for DB initialization.
    """
    raw = os.getenv("DB_INIT_LOCK_KEY", "834221").strip()
    try:
        return int(raw)
    except ValueError:
        return 834221


def _uses_advisory_lock(connection) -> bool:
    return connection.dialect.name == "postgresql"


def init_db(max_retries: int = 30, retry_interval: float = 2) -> None:
    """
    データベースの初期化を行う関数
    Create the schema, retrying while the database is still starting up.

    PostgreSQLでは複数ワーカーの同時初期化をアドバイザリロックで防ぎます。
    On PostgreSQL an advisory lock serializes concurrent workers.
    """
    # モデル定義をメタデータに登録する
    # Register model tables on the metadata
    from dreamtrip import models  # noqa: F401

    for i in range(max_retries):
        try:
            with engine.begin() as connection:
                locked = _uses_advisory_lock(connection)
                if locked:
                    connection.execute(text("SELECT pg_advisory_lock(:key)"), {"key": _db_init_lock_key()})
                try:
                    Base.metadata.create_all(bind=connection)
                finally:
                    if locked:
                        connection.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": _db_init_lock_key()})
            logger.info("Database initialized successfully.")
            return
        except OperationalError:
            if i < max_retries - 1:
                logger.warning(
                    "Database not ready yet, retrying in %s seconds... (Attempt %s/%s)",
                    retry_interval, i + 1, max_retries,
                )
                time.sleep(retry_interval)
            else:
                logger.error("Could not connect to database after multiple attempts.")
                raise
