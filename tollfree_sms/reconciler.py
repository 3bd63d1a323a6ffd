"""
Verification status reconciliation.

Polls the carrier for businesses whose verification is still pending and
writes back any change. Every polled business gets its poll time stamped
and the least recently polled go first, so small batches still rotate
through the whole pending set.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from tollfree_sms.carrier import CarrierClient
from tollfree_sms.config import Settings
from tollfree_sms.errors import CarrierError
from tollfree_sms.metrics import record_reconciler_result
from tollfree_sms.storage import Store

logger = logging.getLogger(__name__)


@dataclass
class StatusRefresh:
    status: str
    details: Optional[str] = None
    changed: bool = False
    live: bool = True


async def refresh_business_status(store: Store, carrier: CarrierClient, business) -> StatusRefresh:
    """
    Query the carrier for one business and persist the mapped status if it changed.

    Raises:
        CarrierError: the status lookup failed
    """
    capability = await carrier.get_capability_status(business.carrier_account_id)
    if capability.status == business.verification_status:
        return StatusRefresh(status=capability.status, details=capability.details, changed=False)

    logger.info(
        f"Business {business.id} verification {business.verification_status} -> {capability.status}"
    )
    store.update_business(
        business.id,
        verification_status=capability.status,
        last_verification_error=capability.details,
    )
    return StatusRefresh(status=capability.status, details=capability.details, changed=True)


class StatusReconciler:
    def __init__(self, store: Store, carrier: CarrierClient, settings: Settings):
        self._store = store
        self._carrier = carrier
        self._batch_size = settings.RECONCILE_BATCH_SIZE

    async def run(self) -> tuple[int, int]:
        """
        Reconcile one batch of pending businesses.

        Returns:
            Tuple of (checked, updated)
        """
        businesses = self._store.list_pending_businesses(self._batch_size)
        checked = updated = 0

        for business in businesses:
            if not business.carrier_account_id:
                self._store.mark_status_checked(business.id)
                record_reconciler_result("skipped")
                continue
            checked += 1
            try:
                refresh = await refresh_business_status(self._store, self._carrier, business)
            except CarrierError as e:
                logger.error(f"Status check failed for business {business.id}: {e.message}")
                record_reconciler_result("error")
                continue
            finally:
                self._store.mark_status_checked(business.id)
            if refresh.changed:
                updated += 1
                record_reconciler_result("updated")
            else:
                record_reconciler_result("unchanged")

        logger.info(f"Reconciled {checked} pending business(es), {updated} updated")
        return checked, updated
