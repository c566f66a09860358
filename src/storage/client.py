"""
Database Client

SQLAlchemy 2.0 sync engine + session factory.

Commit по слоту сериализуется на двух уровнях:
- PostgreSQL: транзакции с isolation SERIALIZABLE + SELECT ... FOR UPDATE
  строки slot_guards;
- SQLite (тесты, локальная разработка): FOR UPDATE не поддерживается,
  поэтому engine открывает пишущие транзакции через BEGIN IMMEDIATE,
  писатели выстраиваются в очередь на файловой блокировке. read_scope
  открывает обычный BEGIN: preview не ждёт писателей.
"""

from contextlib import contextmanager
from typing import Iterator

import structlog
from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from src.config import Settings, get_settings
from src.storage.models import Base, SlotGuard

logger = structlog.get_logger()

# SQLSTATE serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})
_SQLITE_BUSY_MARKERS = ("database is locked", "database is busy")

READ_ONLY_OPTION = "territory_read_only"


def create_db_engine(url: str | None = None, echo: bool | None = None) -> Engine:
    """Создать engine с настройками изоляции под диалект."""
    settings = get_settings()
    url = url or settings.database_url
    echo = settings.db_echo if echo is None else echo

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"timeout": 30, "check_same_thread": False},
        )
        _enable_sqlite_immediate_transactions(engine)
    else:
        engine = create_engine(
            url,
            echo=echo,
            isolation_level="SERIALIZABLE",
            pool_pre_ping=True,
        )

    logger.info("Database engine created", dialect=engine.dialect.name)
    return engine


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    """pysqlite: отключить собственный BEGIN драйвера и эмитить BEGIN IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(connection):
        if connection.get_execution_options().get(READ_ONLY_OPTION):
            connection.exec_driver_sql("BEGIN")
        else:
            connection.exec_driver_sql("BEGIN IMMEDIATE")


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    Транзакционная сессия.

    Usage:
        with session_scope(factory) as session:
            session.add(...)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def read_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Сессия только для чтения (preview, выборки). Ничего не коммитит."""
    session = factory()
    try:
        session.connection(execution_options={READ_ONLY_OPTION: True})
        yield session
    finally:
        session.rollback()
        session.close()


def init_schema(engine: Engine, settings: Settings | None = None) -> None:
    """Создать таблицы и засеять slot_guards для всех сконфигурированных слотов."""
    settings = settings or get_settings()
    Base.metadata.create_all(engine)

    factory = make_session_factory(engine)
    with session_scope(factory) as session:
        existing = set(session.scalars(select(SlotGuard.slot)))
        for slot in range(1, settings.slot_count + 1):
            if slot not in existing:
                session.add(SlotGuard(slot=slot, commits=0))

    logger.info("Database schema initialized", slot_count=settings.slot_count)


def is_serialization_failure(exc: BaseException) -> bool:
    """Ошибка конкурентной сериализации, после которой транзакцию можно повторить."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    if isinstance(exc, OperationalError):
        message = str(orig).lower()
        return any(marker in message for marker in _SQLITE_BUSY_MARKERS)
    return False
