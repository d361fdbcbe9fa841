from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from dotenv import load_dotenv
from pathlib import Path
import logging

from config import get_settings

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')


def build_engine(database_url: str, echo: bool = False, ssl: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend."""
    if database_url.startswith("sqlite"):
        if ":///./" in database_url:
            Path(database_url.split(":///", 1)[1]).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(database_url, echo=echo)

    connect_args = {"ssl": "require"} if ssl else {}
    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args=connect_args
    )


_settings = get_settings()

engine = build_engine(
    _settings.get_database_url(),
    echo=_settings.DATABASE_ECHO,
    ssl=_settings.DATABASE_SSL,
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


class Base(DeclarativeBase):
    pass


async def get_db():
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Initialize database connection and create missing tables"""
    # Import models so they are registered on Base.metadata
    from database import reconciliation_models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database connection verified, reconciliation tables ready")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
