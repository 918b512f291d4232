from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header

from brewery_core.errors import TenantRequired
from brewery_core.logging_config import LogContext


@dataclass(frozen=True)
class Scope:
    """Caller identity as handed over by the auth layer: who is acting, for which tenant."""
    tenant_id: str
    actor_id: str = "system"


async def get_scope(
    x_tenant_id: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> Scope:
    if not x_tenant_id:
        raise TenantRequired()
    scope = Scope(tenant_id=x_tenant_id, actor_id=x_actor_id or "system")
    LogContext.set(tenant_id=scope.tenant_id, actor_id=scope.actor_id)
    return scope
