"""Async SQLAlchemy engine & session — supports SQLite and PostgreSQL."""

from sqlalchemy import event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from app.config import get_settings

settings = get_settings()

# SQLite needs connect_args for async; PostgreSQL uses pool_size.
# aiosqlite connections are bound to the loop that opened them, so they are not pooled.
if settings.is_sqlite:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )
else:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=10,
    )

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@event.listens_for(Base, "init", propagate=True)
def _fill_column_defaults(target, args, kwargs):
    """Give a freshly built model its column defaults before any flush.

    Scoring, alerts and snapshots read transient leads, which must already
    carry ``stage="new"``, ``tags="[]"`` and the timestamps.
    """
    # column_attrs configures pending mappers; the first model built in a
    # process may come before any query has done so.
    mapper = sa_inspect(type(target))
    for attr in mapper.column_attrs:
        default = attr.columns[0].default
        if default is None or attr.key in kwargs or getattr(target, attr.key, None) is not None:
            continue
        if default.is_callable:
            # SQLAlchemy wraps zero-arg callables to take the execution context
            setattr(target, attr.key, default.arg(None))
        elif default.is_scalar:
            setattr(target, attr.key, default.arg)


def insert_ignore(model, conflict_key: str, **values):
    """Build an INSERT that silently skips rows violating the unique ``conflict_key``.

    The returned statement's ``rowcount`` is 1 when the row was written and 0
    when an existing row already held the key.
    """
    if settings.is_sqlite:
        from sqlalchemy.dialects.sqlite import insert
    else:
        from sqlalchemy.dialects.postgresql import insert

    return insert(model).values(**values).on_conflict_do_nothing(index_elements=[conflict_key])


async def get_db():
    async with async_session() as session:
        yield session
