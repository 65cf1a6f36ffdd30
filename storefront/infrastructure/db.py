from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from typing import Callable, TypeVar
from storefront.core_settings import get_settings
from storefront.domain.models import Base

T = TypeVar("T")

def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine whose transactions are safe for stock reservation.

    SQLite only locks the database on the first write, so two order
    transactions could both read the same stock level. Every transaction is
    opened with BEGIN IMMEDIATE instead, which serializes writers up front.
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine
    return create_engine(url, echo=echo, future=True, pool_pre_ping=True)

def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

settings = get_settings()
engine = build_engine(settings.database_url, echo=settings.DB_ECHO)
SessionLocal = build_session_factory(engine)

def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def run_in_transaction(db: Session, work: Callable[[Session], T]) -> T:
    """Run ``work`` as one unit of work.

    Commits when ``work`` returns and rolls back on any exception, so every
    write performed inside it lands together or not at all. A read-only
    transaction left open by earlier queries on the session is closed first,
    making ``work`` start from a fresh snapshot.
    """
    if db.in_transaction():
        db.commit()
    try:
        result = work(db)
        db.commit()
    except BaseException:
        db.rollback()
        raise
    return result

def init_models(bind: Engine = None):
    Base.metadata.create_all(bind or engine)
