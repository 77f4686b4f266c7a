from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from campaign_engine.core.config import get_settings

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)

Base = declarative_base()

DATABASE_URL = ""
engine = None
_configured_database_url = None


def configure_database() -> None:
    global DATABASE_URL, engine, _configured_database_url

    database_url = get_settings().database_url

    if engine is not None and _configured_database_url == database_url:
        return

    engine = create_engine(database_url, pool_pre_ping=True)
    SessionLocal.configure(bind=engine)
    DATABASE_URL = database_url
    _configured_database_url = database_url


configure_database()


def get_db():
    configure_database()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
