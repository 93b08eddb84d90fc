from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from dotenv import load_dotenv
from pathlib import Path
from typing import Optional
import logging

from config import get_settings

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def get_engine() -> AsyncEngine:
    """Create the async engine on first use (the memory store never needs one)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {"ssl": "require"} if settings.is_production else {}
        _engine = create_async_engine(
            settings.get_database_url(),
            echo=False,
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
            connect_args=connect_args,
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False
        )
    return _session_factory


async def init_db():
    """Initialize database connection and verify the identity table exists"""
    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("PostgreSQL connection successful")

            result = await conn.execute(text("""
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = 'public' AND table_name = 'identity_documents'
            """))
            if not result.fetchall():
                logger.warning("identity_documents table missing - run migrations/create_identity_tables.py")
                return False

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise


async def close_db():
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
