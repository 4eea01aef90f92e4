from __future__ import annotations

import logging
from typing import Any, Mapping

from gympass.core.errors import TenantDeletedError, TenantStateConflictError
from gympass.domain.models import Gym
from gympass.domain.state import TenantStatus
from gympass.persistence.repos.tenants import TenantRegistry
from gympass.persistence.tenant_storage import TenantStorageRouter


logger = logging.getLogger(__name__)


class TenantAdminService:
    """Platform-admin actions on gyms; status changes apply to the next request."""

    def __init__(self, registry: TenantRegistry, router: TenantStorageRouter) -> None:
        self._registry = registry
        self._router = router

    async def list_gyms(self, *, include_deleted: bool = False) -> list[Gym]:
        return await self._registry.list_active(include_deleted=include_deleted)

    async def get_gym(self, tenant_id: str) -> Gym:
        return await self._registry.require(tenant_id)

    async def block_tenant(self, tenant_id: str) -> Gym:
        gym = await self._require_live(tenant_id)
        if gym.status == TenantStatus.BLOCKED.value:
            raise TenantStateConflictError("Gym is already blocked", tenant_id=tenant_id, status=gym.status)
        return await self._registry.set_status(tenant_id, TenantStatus.BLOCKED)

    async def unblock_tenant(self, tenant_id: str) -> Gym:
        # Only a blocked gym goes back to ACTIVE; a pending gym still needs its payment.
        gym = await self._require_live(tenant_id)
        if gym.status != TenantStatus.BLOCKED.value:
            raise TenantStateConflictError("Gym is not blocked", tenant_id=tenant_id, status=gym.status)
        return await self._registry.set_status(tenant_id, TenantStatus.ACTIVE)

    async def soft_delete_tenant(self, tenant_id: str) -> Gym:
        await self._require_live(tenant_id)
        gym = await self._registry.set_status(tenant_id, TenantStatus.DELETED)
        # Storage is kept on disk; only the live handle goes away.
        await self._router.invalidate(gym.slug)
        logger.info("tenant_soft_deleted slug=%s tenant_id=%s", gym.slug, tenant_id)
        return gym

    async def update_business_info(self, tenant_id: str, fields: Mapping[str, Any]) -> Gym:
        await self._require_live(tenant_id)
        return await self._registry.update_business_info(tenant_id, fields)

    async def update_opening_hours(self, tenant_id: str, opening_hours: dict[str, Any]) -> Gym:
        await self._require_live(tenant_id)
        return await self._registry.update_opening_hours(tenant_id, opening_hours)

    async def _require_live(self, tenant_id: str) -> Gym:
        gym = await self._registry.require(tenant_id)
        if gym.status == TenantStatus.DELETED.value:
            raise TenantDeletedError(tenant_id=tenant_id)
        return gym
