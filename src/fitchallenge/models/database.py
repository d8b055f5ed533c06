from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import Base
from . import activity, challenge, profile  # noqa: F401  (register tables on Base.metadata)
from ..config import settings
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

# Create async engine
engine = create_async_engine(settings.database_url, echo=settings.database_echo)

# Create async session factory
async_session = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def get_session() -> AsyncSession:
    async with async_session() as session:
        yield session

async def check_db_connection() -> bool:
    """Check if the database connection is working."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection error: {e}")
        return False

@retry(
    stop=stop_after_attempt(settings.db_connect_retries),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((SQLAlchemyError, OSError)),
    reraise=True
)
async def wait_for_db():
    """Block until the database accepts connections."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database is ready")
