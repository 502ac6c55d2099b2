# calsync/db/base.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from calsync.core.config import settings

db_url = str(settings.SQLALCHEMY_DATABASE_URI)

# Webhook-triggered syncs run on the event loop thread while request handlers
# run in the threadpool, so SQLite connections must be shareable across threads.
connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}

engine = create_engine(db_url, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()
