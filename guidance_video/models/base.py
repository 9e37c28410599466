from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from guidance_video.core.config import settings


class Base(DeclarativeBase):
    pass


def create_db_engine(url: str):
    """Create an engine; SQLite (dev and tests) shares one connection across worker threads."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


engine = create_db_engine(settings.database_url)
