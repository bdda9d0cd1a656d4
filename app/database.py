from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from app.config import settings
from app.models.base import Base

# Database setup
engine = create_async_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)
AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)

async def get_db():
    async with AsyncSessionLocal() as session:
        yield session

async def init_models():
    # Importing the model modules registers every table on Base.metadata
    import app.models.notification  # noqa: F401
    import app.models.webhook  # noqa: F401
    import app.models.settings  # noqa: F401
    import app.models.preferences  # noqa: F401
    import app.models.inbox  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
