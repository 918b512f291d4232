from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria

from brewery_core.config import settings
from brewery_core.models import TenantScoped
from brewery_core.tenancy import Scope, get_scope

TENANT_KEY = "tenant_id"

_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is not set")
        _engine = create_async_engine(
            settings.database_url,
            future=True,
            echo=settings.database_echo,
            pool_pre_ping=True,
        )
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _sessionmaker


def bind_tenant(session: AsyncSession, tenant_id: str) -> AsyncSession:
    session.info[TENANT_KEY] = tenant_id
    return session


def bound_tenant(session: Session) -> str | None:
    return session.info.get(TENANT_KEY)


@event.listens_for(Session, "do_orm_execute")
def _scope_orm_selects(state: ORMExecuteState) -> None:
    if not state.is_select or state.is_column_load or state.is_relationship_load:
        return
    tenant_id = bound_tenant(state.session)
    if tenant_id is None:
        mappers = state.all_mappers
        if any(issubclass(m.class_, TenantScoped) for m in mappers):
            raise RuntimeError("tenant-scoped query issued on a session without a bound tenant")
        return
    state.statement = state.statement.options(
        with_loader_criteria(
            TenantScoped,
            lambda cls: cls.tenant_id == tenant_id,
            include_aliases=True,
        )
    )


@event.listens_for(Session, "before_flush")
def _stamp_and_guard_tenant(session: Session, flush_context, instances) -> None:
    tenant_id = bound_tenant(session)
    for obj in list(session.new) + list(session.dirty):
        if not isinstance(obj, TenantScoped):
            continue
        if tenant_id is None:
            raise RuntimeError("tenant-scoped write on a session without a bound tenant")
        if obj.tenant_id is None:
            obj.tenant_id = tenant_id
        elif obj.tenant_id != tenant_id:
            raise PermissionError(
                f"{type(obj).__name__} belongs to tenant {obj.tenant_id}, session is bound to {tenant_id}"
            )


async def get_session(scope: Scope = Depends(get_scope)) -> AsyncIterator[AsyncSession]:
    async with get_sessionmaker()() as session:
        bind_tenant(session, scope.tenant_id)
        yield session
