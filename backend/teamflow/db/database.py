from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from teamflow.config import get_settings

settings = get_settings()


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Run records are read after commit by the executor, so attributes must not expire
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = create_engine(settings.DATABASE_URL)
async_session = create_session_factory(engine)


class Base(DeclarativeBase):
    pass


async def get_db():
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: AsyncEngine | None = None):
    """Create any missing tables on ``bind`` (the application engine by default)."""
    # Import all models so Base.metadata knows about them
    import teamflow.models.records  # noqa: F401
    import teamflow.models.user  # noqa: F401
    import teamflow.models.workflow  # noqa: F401
    import teamflow.models.workflow_run  # noqa: F401
    import teamflow.models.workspace  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
