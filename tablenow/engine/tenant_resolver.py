"""Maps the identifiers carried by an inbound event to a tenant."""

import logging

from tablenow.models import Tenant, TenantKeys
from tablenow.services.store import ReservationStore, TenantLookupKey

logger = logging.getLogger(__name__)


class TenantResolver:
    """Resolves tenants through an ordered fallback chain of lookup keys.

    Call-lifecycle events carry the phone-number id (and usually the number
    string); tool-call events carry the assistant id. The first lookup that
    finds exactly one tenant wins.
    """

    def __init__(self, store: ReservationStore) -> None:
        self.store = store

    @staticmethod
    def lookup_chain(
        keys: TenantKeys, assistant_only: bool = False
    ) -> list[tuple[TenantLookupKey, str]]:
        """Return the (key, value) lookups to try, in order."""
        if assistant_only:
            candidates = [(TenantLookupKey.ASSISTANT_ID, keys.assistant_id)]
        elif keys.assistant_id:
            candidates = [
                (TenantLookupKey.ASSISTANT_ID, keys.assistant_id),
                (TenantLookupKey.PHONE_NUMBER_ID, keys.phone_number_id),
                (TenantLookupKey.PHONE_NUMBER, keys.phone_number),
            ]
        else:
            candidates = [
                (TenantLookupKey.PHONE_NUMBER_ID, keys.phone_number_id),
                (TenantLookupKey.PHONE_NUMBER, keys.phone_number),
            ]
        return [(key, value) for key, value in candidates if value]

    async def resolve(self, keys: TenantKeys, assistant_only: bool = False) -> Tenant | None:
        """Find the tenant an event belongs to.

        Args:
            keys: Identifiers extracted from the event
            assistant_only: Only try the assistant id (legacy function-call path)

        Returns:
            Tenant, or None when no key identifies exactly one tenant
        """
        for key, value in self.lookup_chain(keys, assistant_only):
            tenant = await self.store.find_tenant(key, value)
            if tenant is not None:
                logger.debug(f"Resolved tenant {tenant.id} by {key.value}")
                return tenant

        logger.warning(f"Tenant not found for {keys.model_dump(exclude_none=True)}")
        return None

    async def get(self, tenant_id: str) -> Tenant | None:
        """Look up a tenant by id (email channel)."""
        tenant = await self.store.get_tenant(tenant_id)
        if tenant is None:
            logger.warning(f"Tenant not found for id {tenant_id}")
        return tenant
