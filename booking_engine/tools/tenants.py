"""
Tenant configuration lookup.

In production, tenant booking settings live on the bot/tenant record in
the main database and are edited from the admin screens. The registry is
the in-memory stand-in: configs are looked up fresh on every booking
operation, never cached by the orchestrator.
"""

import logging
from typing import Optional

from booking_engine.schemas.tenant_schema import TenantConfig

logger = logging.getLogger(__name__)


class TenantRegistry:
    """In-memory mapping of tenant id to TenantConfig."""

    def __init__(self, tenants: Optional[list[TenantConfig]] = None) -> None:
        self._tenants: dict[str, TenantConfig] = {}
        for tenant in tenants or []:
            self.register(tenant)

    def register(self, tenant: TenantConfig) -> None:
        self._tenants[tenant.tenant_id] = tenant
        logger.debug("Tenant registered: %s (%d services)", tenant.tenant_id, len(tenant.services))

    def get(self, tenant_id: str) -> Optional[TenantConfig]:
        tenant = self._tenants.get(tenant_id)
        return tenant.model_copy(deep=True) if tenant else None

    def reset(self) -> None:
        self._tenants.clear()
