from threading import Lock

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stockledger.core.config import settings

_IN_MEMORY_SQLITE_URLS = {"sqlite:", "sqlite://", "sqlite:///:memory:"}


def is_in_memory_sqlite(url: str) -> bool:
    return url.rstrip("/") in _IN_MEMORY_SQLITE_URLS


def _serialize_checkouts(engine: Engine) -> None:
    """
    An in-memory database lives on one shared DBAPI connection. Hand it to
    one session at a time, from checkout to checkin, so that one session's
    commit or rollback never ends another session's transaction.
    """
    checkout_lock = Lock()

    def _acquire(dbapi_connection, connection_record, connection_proxy) -> None:
        checkout_lock.acquire()

    def _release(dbapi_connection, connection_record) -> None:
        checkout_lock.release()

    event.listen(engine, "checkout", _acquire)
    event.listen(engine, "checkin", _release)


def build_engine(database_url: str | None = None) -> Engine:
    url = database_url or settings.database_url
    engine_kwargs: dict[str, object] = {}

    if url.lower().startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if is_in_memory_sqlite(url):
            # One shared connection so every session sees the same in-memory database.
            engine_kwargs["poolclass"] = StaticPool
            engine = create_engine(url, **engine_kwargs)
            _serialize_checkouts(engine)
            return engine
        engine_kwargs["pool_pre_ping"] = True
    else:
        # Tune SQLAlchemy pool for networked databases (e.g., Postgres).
        engine_kwargs.update(
            {
                "pool_pre_ping": True,
                "pool_size": settings.db_pool_size,
                "max_overflow": settings.db_max_overflow,
                "pool_timeout": settings.db_pool_timeout_seconds,
                "pool_recycle": settings.db_pool_recycle_seconds,
            }
        )

    return create_engine(url, **engine_kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = build_engine()

SessionLocal = build_session_factory(engine)
