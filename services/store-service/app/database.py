from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .config import DATABASE_URL, DB_TIMEOUT_SECONDS


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        # requests are served from a thread pool
        return {"check_same_thread": False, "timeout": DB_TIMEOUT_SECONDS}
    if url.startswith("postgresql"):
        ms = int(DB_TIMEOUT_SECONDS * 1000)
        return {
            "connect_timeout": max(1, int(DB_TIMEOUT_SECONDS)),
            "options": f"-c statement_timeout={ms} -c lock_timeout={ms}",
        }
    return {}


def make_engine(url: str = DATABASE_URL):
    kwargs = {"connect_args": _connect_args(url)}
    if not url.startswith("sqlite"):
        kwargs["pool_timeout"] = DB_TIMEOUT_SECONDS
        kwargs["pool_pre_ping"] = True
    return create_engine(url, **kwargs)


engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
