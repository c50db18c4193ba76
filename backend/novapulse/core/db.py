# Database wiring: one engine per process, a session factory for
# request handlers and workers, and the declarative Base for models.

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from novapulse.core.config import settings


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        # Worker threads share the engine; sqlite needs this to allow it.
        return {"check_same_thread": False, "timeout": 30}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=settings.DB_ECHO,
    pool_pre_ping=True,
    future=True,
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
