import os
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./survey.db")

# execution option a session sets to take the write lock when its transaction begins
WRITE_LOCK = "survey_write_lock"

Base = declarative_base()

def configure_sqlite(engine):
    """Attach the SQLite connection hooks.

    - ON DELETE CASCADE is respected at DB level.
    - Transactions flagged with WRITE_LOCK open with BEGIN IMMEDIATE and hold
      the database write lock until commit; all others use a deferred BEGIN.
    """
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        # let SQLAlchemy emit BEGIN itself
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin(conn):
        if conn.get_execution_options().get(WRITE_LOCK):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    return engine

def make_engine(url: str):
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 15})
        return configure_sqlite(engine)
    return create_engine(url, pool_pre_ping=True)

engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
