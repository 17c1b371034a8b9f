from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from boardhook.config import settings
from boardhook.models import Base


def make_engine(url: str | None = None) -> AsyncEngine:
  return create_async_engine(url or settings.database_url, pool_pre_ping=True)


engine = make_engine()
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def create_all(bind: AsyncEngine | None = None) -> None:
  async with (bind or engine).begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
