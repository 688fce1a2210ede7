"""
Module: fieldservice_kernel.db.engine
Responsibility: Engine and session-factory construction, schema creation.
    There is no module-level engine: callers build one from settings or a URL
    and pass the resulting session factory into TransactionalUnit and the
    automation dispatcher. Tests build an isolated engine per test.
Architecture position: Kernel > DB. May import db/base.py, db/tenancy.py,
    db/guards.py, db/policies.py and models/.

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with explicit row locks (FOR UPDATE)
      where a read feeds a write.
    - Every session produced by ``create_session_factory`` carries the tenant
      isolation listeners.
    - SQLite connections emit their own BEGIN so SAVEPOINTs nest correctly.

Failure modes:
    - OperationalError on connection failure, surfaced to the caller.
"""

from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from fieldservice_kernel.logging_config import get_logger

logger = get_logger("db.engine")


def create_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Build an Engine for ``database_url``.

    PostgreSQL gets a sized QueuePool at READ COMMITTED. SQLite (tests,
    local development) gets the driver's default pool and the transaction
    fix-ups from ``_enable_sqlite_transactions``.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    is_sqlite = database_url.startswith("sqlite")
    if not is_sqlite:
        kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    engine = create_engine(database_url, **kwargs)
    if is_sqlite:
        _enable_sqlite_transactions(engine)

    logger.info(
        "engine_initialized",
        extra={
            "dialect": engine.dialect.name,
            "pool_size": None if is_sqlite else pool_size,
            "echo": echo,
        },
    )
    return engine


def create_engine_from_settings(settings: Any) -> Engine:
    """Build an Engine from a ``DatabaseSettings`` instance."""
    return create_engine_from_url(
        settings.url,
        echo=settings.echo,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
    )


def _enable_sqlite_transactions(engine: Engine) -> None:
    """
    Let SQLAlchemy, not pysqlite, control BEGIN.

    pysqlite defers BEGIN until the first DML statement, which breaks
    SAVEPOINT nesting and lets SELECT ... (no FOR UPDATE on SQLite) run
    outside the transaction.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_session_factory(
    engine: Engine, enforce_storage_guards: bool = True
) -> sessionmaker[Session]:
    """
    Session factory with tenant isolation attached.

    Storage guards are mapper-level and process-wide; they are registered
    here (idempotently) unless a caller opts out.
    """
    from fieldservice_kernel.db.guards import register_storage_guards
    from fieldservice_kernel.db.tenancy import install_tenant_isolation

    factory = sessionmaker(bind=engine, expire_on_commit=False)
    install_tenant_isolation(factory)
    if enforce_storage_guards:
        register_storage_guards()
    return factory


def create_tables(engine: Engine, install_policies: bool = True) -> None:
    """
    Create all tables and, on PostgreSQL, install RLS policies and triggers.
    """
    import fieldservice_kernel.models  # noqa: F401  (registers tables)
    from fieldservice_kernel.db.base import Base

    Base.metadata.create_all(engine)
    logger.info(
        "tables_created",
        extra={"tables": len(Base.metadata.tables), "dialect": engine.dialect.name},
    )

    if install_policies and is_postgres(engine):
        from fieldservice_kernel.db.policies import install_storage_policies

        install_storage_policies(engine)


def drop_tables(engine: Engine) -> None:
    """Drop all tables. Use with caution - primarily for testing."""
    import fieldservice_kernel.models  # noqa: F401
    from fieldservice_kernel.db.base import Base

    if is_postgres(engine):
        from fieldservice_kernel.db.policies import uninstall_storage_policies

        uninstall_storage_policies(engine)
    Base.metadata.drop_all(engine)


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"
