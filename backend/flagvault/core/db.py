# SQLAlchemy wiring: one engine, one session factory and the declarative
# Base every ORM model inherits from. Routes get a session via get_db.

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from flagvault.core.config import settings


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO,
    connect_args=_connect_args(settings.DATABASE_URL),
    future=True,
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    # Tests swap SessionLocal on this module, so look it up at call time.
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
