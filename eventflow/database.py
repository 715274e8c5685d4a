"""Async SQLAlchemy engine & session — supports SQLite and PostgreSQL."""

from datetime import timezone

from sqlalchemy import DateTime, event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from eventflow.config import Settings, get_settings


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


@event.listens_for(Base, "init", propagate=True)
def _apply_defaults(target, args, kwargs):
    """Apply Column defaults at Python level right after __init__."""
    from sqlalchemy import inspect as sa_inspect

    mapper = sa_inspect(type(target))
    for col_attr in mapper.column_attrs:
        key = col_attr.key
        if key in kwargs:
            continue
        if getattr(target, key, None) is not None:
            continue
        col = col_attr.columns[0]
        if col.default is None:
            continue
        arg = col.default.arg
        if callable(arg):
            try:
                setattr(target, key, arg())
            except TypeError:
                # SQLAlchemy wraps zero-arg callables to accept an execution context
                setattr(target, key, arg(None))
        else:
            setattr(target, key, arg)


def create_engine_from_settings(settings: Settings | None = None):
    settings = settings or get_settings()
    # SQLite needs connect_args for async; PostgreSQL uses pool_size
    if settings.is_sqlite:
        # In-memory databases live per connection, so share one
        extra = {"poolclass": StaticPool} if ":memory:" in settings.database_url else {}
        return create_async_engine(
            settings.database_url,
            echo=settings.debug,
            connect_args={"check_same_thread": False},
            **extra,
        )
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=10,
    )


def create_session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
