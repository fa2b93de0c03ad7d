# database.py
from databases import Database
from sqlalchemy import create_engine, MetaData

from fuel_dispatch.config import DATABASE_URL

# async database client
database = Database(DATABASE_URL)


def sync_url(url: str) -> str:
    return url.replace("+asyncpg", "").replace("+aiosqlite", "")


# SQLAlchemy sync engine for metadata.create_all()
engine = create_engine(sync_url(DATABASE_URL))
metadata = MetaData()


def init_db(bind=None):
    # tables live in models.py
    from fuel_dispatch import models  # noqa: F401

    metadata.create_all(bind or engine)
