from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from eventpay.config import get_settings

settings = get_settings()


def _engine_options(url: str) -> dict:
    """Bound every datastore call so a hung connection surfaces as an error."""
    if url.startswith("sqlite"):
        return {
            "connect_args": {
                "check_same_thread": False,
                "timeout": settings.db_timeout_seconds,
            }
        }
    timeout_ms = int(settings.db_timeout_seconds * 1000)
    return {
        "pool_pre_ping": True,
        "pool_timeout": settings.db_timeout_seconds,
        "connect_args": {"options": f"-c statement_timeout={timeout_ms}"},
    }


engine = create_engine(settings.database_url, **_engine_options(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    import eventpay.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
