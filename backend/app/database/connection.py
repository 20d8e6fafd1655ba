import time
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from app.core.config import settings
from app.core.logging import db_logger
from app.core.monitoring import database_connections, record_database_operation


def build_engine(database_url: str) -> Engine:
    """SQLite shares one connection across threads; server databases get a checked pool"""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_pre_ping=True,
        pool_recycle=3600,
        **settings.engine_options(),
    )


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


@event.listens_for(engine, "connect")
def on_connect(dbapi_connection, connection_record):
    database_connections.inc()
    if engine.dialect.name == "sqlite":
        # Cascades and chat_id references are only enforced with this on
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
    db_logger.debug("Database connection opened", dialect=engine.dialect.name)


@event.listens_for(engine, "invalidate")
def on_invalidate(dbapi_connection, connection_record, exception):
    database_connections.dec()
    db_logger.warning("Database connection invalidated", error=str(exception) if exception else None)


def get_db():
    """FastAPI dependency: one session per request, rolled back if the handler raises"""
    started = time.perf_counter()
    db: Session = SessionLocal()
    try:
        yield db
    except Exception as e:
        db_logger.error("Request session rolled back", error=str(e), error_type=type(e).__name__)
        db.rollback()
        raise
    finally:
        db.close()
        record_database_operation("session", time.perf_counter() - started)


def create_tables():
    """Create chats, messages and checkpoints if missing (migrations own production schemas)"""
    import app.models  # noqa: F401  registers the tables on Base.metadata

    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        db_logger.error("Failed to create database tables", error=str(e))
        raise
    db_logger.info("Database tables ready", tables=sorted(Base.metadata.tables))


def check_database_health() -> bool:
    started = time.perf_counter()
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as e:
        db_logger.error("Database health check failed", error=str(e))
        return False
    record_database_operation("health_check", time.perf_counter() - started)
    return True


def get_db_stats() -> dict:
    pool = engine.pool
    if not isinstance(pool, QueuePool):
        return {"pool": type(pool).__name__}
    return {
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }


@contextmanager
def timed_operation(operation_name: str):
    """Time a store operation; failures are logged and re-raised"""
    started = time.perf_counter()
    try:
        yield
    except Exception as e:
        db_logger.error("Database operation failed", operation=operation_name, error=str(e))
        raise
    finally:
        record_database_operation(operation_name, time.perf_counter() - started)
