"""
UPC Conflict Engine Database Session Management

Async SQLAlchemy engine and session factory. API requests share the pooled
module-level engine; Celery tasks build a task-local engine with
``build_engine(settings, poolclass=NullPool)`` because each task runs its own
event loop.
"""

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings


def build_engine(settings, **engine_kwargs) -> AsyncEngine:
    if "poolclass" not in engine_kwargs:
        engine_kwargs.setdefault("pool_size", 20)
        engine_kwargs.setdefault("max_overflow", 10)
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_pre_ping=True,
        **engine_kwargs,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Engine code reads ORM attributes after commit; keep them loaded.
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(get_settings())

AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


TENANT_SETTING = "app.current_organization_id"


def _set_tenant(connection, organization_id: str) -> None:
    if connection.dialect.name != "postgresql":
        return
    connection.execute(
        text("SELECT set_config(:name, :oid, true)"),
        {"name": TENANT_SETTING, "oid": organization_id},
    )


def bind_tenant_context(session: AsyncSession, organization_id: str) -> None:
    """
    Scope every transaction of ``session`` to one organization for RLS.

    set_config(..., true) only lasts until commit, and engine code commits
    per chunk and per transition, so the setting is re-applied whenever the
    session begins a new transaction.
    """
    organization_id = str(organization_id)

    @event.listens_for(session.sync_session, "after_begin")
    def _apply_tenant(sync_session, transaction, connection):
        _set_tenant(connection, organization_id)
