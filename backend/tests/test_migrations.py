from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.settings import get_settings

EXPECTED_TABLES = {"users", "categories", "videos", "workflow_runs", "workflow_steps", "mirror_tasks"}


async def _can_connect(database_url: str) -> bool:
    engine = create_async_engine(database_url, pool_pre_ping=True)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
    finally:
        await engine.dispose()


async def _public_tables(database_url: str) -> set[str]:
    engine = create_async_engine(database_url, pool_pre_ping=True)
    try:
        async with engine.connect() as conn:
            res = await conn.execute(
                text(
                    """
                    SELECT table_name
                    FROM information_schema.tables
                    WHERE table_schema = 'public';
                    """
                )
            )
            return {str(r[0]) for r in res.all()}
    finally:
        await engine.dispose()


def test_alembic_upgrade_creates_tables() -> None:
    settings = get_settings()

    if not asyncio.run(_can_connect(settings.database_url)):
        pytest.skip("Database not reachable. Start Postgres and ensure DATABASE_URL is correct.")

    backend_root = Path(__file__).resolve().parents[1]
    cfg = Config(str(backend_root / "alembic.ini"))
    cfg.set_main_option("script_location", str(backend_root / "alembic"))

    command.upgrade(cfg, "head")

    assert EXPECTED_TABLES <= asyncio.run(_public_tables(settings.database_url))
