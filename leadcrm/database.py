"""
Database engine + session factory.

Always initializes — defaults to SQLite for local dev, Postgres in production.
get_session() always returns a real session.
"""
import importlib

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from leadcrm.config import DATABASE_URL


class Base(DeclarativeBase):
    pass


# Hosted Postgres hands out postgres:// but SQLAlchemy 2.x requires postgresql://
url = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

# SQLite needs different engine kwargs than Postgres
if url.startswith('sqlite'):
    engine = create_engine(url, connect_args={'check_same_thread': False})
else:
    engine = create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10)

SessionLocal = sessionmaker(bind=engine)

MODEL_MODULES = (
    'leadcrm.models.lead',
    'leadcrm.models.lead_status_change',
)


def get_session():
    """Return a new DB session."""
    return SessionLocal()


def import_models():
    """Import model modules so Base.metadata knows every table."""
    for name in MODEL_MODULES:
        importlib.import_module(name)


def init_db(bind=None):
    """Create any missing tables (idempotent)."""
    import_models()
    Base.metadata.create_all(bind or engine)
