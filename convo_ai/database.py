from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from convo_ai.config import settings


def _connect_args(database_url: str) -> dict:
    """SQLite connections are shared between request threads and queue workers"""
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url),
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency yielding a database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables"""
    # Import models so they register on Base.metadata
    import convo_ai.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
