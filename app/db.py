# app/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.config import settings

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    future=True,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db():
    """
    FastAPI dependency: una Session per request, sempre chiusa.
    I commit sono espliciti nei service / router.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
