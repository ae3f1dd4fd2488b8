from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone

import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.settings import get_settings
from app.db.models.user import User


async def main() -> None:
    parser = argparse.ArgumentParser(description="Create a dev user and print a bearer token for it.")
    parser.add_argument("--external-id", required=True)
    parser.add_argument("--name", default="Dev User")
    parser.add_argument("--token-minutes", type=int, default=60 * 24)
    args = parser.parse_args()

    settings = get_settings()
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    try:
        async with SessionLocal() as session:
            res = await session.execute(select(User).where(User.external_id == args.external_id))
            user = res.scalar_one_or_none()
            if user is not None:
                print(f"User already exists: id={user.id} external_id={user.external_id}")
            else:
                user = User(external_id=args.external_id, name=args.name.strip() or "Dev User")
                session.add(user)
                await session.commit()
                await session.refresh(user)
                print(f"Created user: id={user.id} external_id={user.external_id}")
    finally:
        await engine.dispose()

    token = jwt.encode(
        {"sub": str(user.id), "exp": datetime.now(timezone.utc) + timedelta(minutes=args.token_minutes)},
        settings.jwt_secret,
        algorithm="HS256",
    )
    print(f"Bearer token: {token}")


if __name__ == "__main__":
    asyncio.run(main())
