"""Conversion activity ledger. SQLite by default; set DATABASE_URL for MySQL.
Startup ensures the table exists; on connection failure logs verbosely and falls back to in-memory SQLite so the app can start."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from compressor import config as app_config

logger = logging.getLogger("compressor.db")

_engine: Optional[Engine] = None

IN_MEMORY_URL = "sqlite:///:memory:"


def _is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        kwargs = {}
        if _is_sqlite():
            kwargs["connect_args"] = {"check_same_thread": False}
            if app_config.DATABASE_URL == IN_MEMORY_URL:
                # One shared connection, otherwise every checkout sees an empty database
                kwargs["poolclass"] = StaticPool
        _engine = create_engine(app_config.DATABASE_URL, **kwargs)
        logger.info("Database engine created (%s)", _engine.dialect.name)
    return _engine


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversion_activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id TEXT NOT NULL,
            filename TEXT NOT NULL,
            target_format TEXT NOT NULL,
            input_bytes INTEGER,
            output_bytes INTEGER,
            status TEXT NOT NULL,
            error TEXT,
            created_at TEXT NOT NULL,
            duration_seconds REAL
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversion_activities (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            client_id VARCHAR(64) NOT NULL,
            filename VARCHAR(512) NOT NULL,
            target_format VARCHAR(16) NOT NULL,
            input_bytes BIGINT,
            output_bytes BIGINT,
            status VARCHAR(16) NOT NULL,
            error TEXT,
            created_at VARCHAR(40) NOT NULL,
            duration_seconds DOUBLE,
            INDEX idx_activities_client (client_id)
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    with engine.connect() as conn:
        if _is_sqlite():
            _create_sqlite_tables(conn)
        else:
            _create_mysql_tables(conn)
    logger.info("Required table ensured: conversion_activities")


def init_db() -> None:
    """Prepare the database at startup. On failure, fall back to in-memory SQLite so the app can start."""
    global _engine
    try:
        _ensure_tables(get_engine())
        logger.info("Database ready")
        return
    except SQLAlchemyError as e:
        logger.warning("Database init failed: %s. Trying in-memory SQLite.", e, exc_info=True)

    app_config.DATABASE_URL = IN_MEMORY_URL
    _engine = None
    _ensure_tables(get_engine())
    logger.warning("Database unavailable. Using in-memory SQLite. Activity will not persist across restarts.")


def reset_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def record_activity(
    client_id: str,
    filename: str,
    target_format: str,
    status: str,
    *,
    input_bytes: Optional[int] = None,
    output_bytes: Optional[int] = None,
    error: Optional[str] = None,
    duration_seconds: Optional[float] = None,
) -> None:
    params = {
        "client_id": client_id,
        "filename": filename,
        "target_format": target_format,
        "input_bytes": input_bytes,
        "output_bytes": output_bytes,
        "status": status,
        "error": error,
        "created_at": _now_iso(),
        "duration_seconds": duration_seconds,
    }
    with session() as conn:
        conn.execute(
            text("""
                INSERT INTO conversion_activities (client_id, filename, target_format, input_bytes, output_bytes, status, error, created_at, duration_seconds)
                VALUES (:client_id, :filename, :target_format, :input_bytes, :output_bytes, :status, :error, :created_at, :duration_seconds)
            """),
            params,
        )


def get_client_stats(client_id: str) -> dict:
    """Aggregate stats for a client: conversions, failures, total bytes in/out, compression_percent, time spent."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("""
                SELECT
                    COUNT(*) AS conversions,
                    COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0) AS failures,
                    COALESCE(SUM(CASE WHEN status = 'completed' THEN input_bytes ELSE 0 END), 0) AS total_input_bytes,
                    COALESCE(SUM(CASE WHEN status = 'completed' THEN output_bytes ELSE 0 END), 0) AS total_output_bytes,
                    COALESCE(SUM(duration_seconds), 0) AS time_spent_seconds
                FROM conversion_activities WHERE client_id = :cid
            """),
            {"cid": client_id},
        ).fetchone()
    if not row or row[0] == 0:
        return {
            "conversions": 0,
            "failures": 0,
            "total_input_bytes": 0,
            "total_output_bytes": 0,
            "compression_percent": 0.0,
            "time_spent_seconds": 0.0,
        }
    total_input = int(row[2])
    total_output = int(row[3])
    compression_percent = 0.0
    if total_input > 0:
        compression_percent = round((1.0 - total_output / total_input) * 100.0, 1)
    return {
        "conversions": int(row[0]),
        "failures": int(row[1]),
        "total_input_bytes": total_input,
        "total_output_bytes": total_output,
        "compression_percent": compression_percent,
        "time_spent_seconds": float(row[4]),
    }


def get_client_activities(client_id: str, limit: int = 100) -> list[dict]:
    """Recent activities for the client, newest first."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("""
                SELECT filename, target_format, input_bytes, output_bytes, status, error, created_at, duration_seconds
                FROM conversion_activities WHERE client_id = :cid ORDER BY id DESC LIMIT :lim
            """),
            {"cid": client_id, "lim": limit},
        ).fetchall()
    return [
        {
            "filename": r[0],
            "target_format": r[1],
            "input_bytes": r[2],
            "output_bytes": r[3],
            "status": r[4],
            "error": r[5],
            "created_at": r[6],
            "duration_seconds": r[7],
        }
        for r in rows
    ]


def delete_client_data(client_id: str) -> int:
    with session() as conn:
        result = conn.execute(text("DELETE FROM conversion_activities WHERE client_id = :cid"), {"cid": client_id})
    return result.rowcount
