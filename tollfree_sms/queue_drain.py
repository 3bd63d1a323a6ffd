"""
Provisioning queue drain.

Promotes queued provisioning requests into real numbers, oldest first, up
to the capacity that is free when the run starts. A failed item is marked
"error" and is not retried; it also does not give its attempt to another
item in the same run.
"""

import logging

from tollfree_sms.carrier import CampaignInfo, CarrierClient
from tollfree_sms.config import Settings
from tollfree_sms.metrics import record_drain_item
from tollfree_sms.models import QueueStatus
from tollfree_sms.provisioning import capacity_snapshot, purchase_and_submit
from tollfree_sms.storage import Store

logger = logging.getLogger(__name__)


class QueueDrainWorker:
    def __init__(self, store: Store, carrier: CarrierClient, settings: Settings):
        self._store = store
        self._carrier = carrier
        self._settings = settings

    async def drain(self) -> int:
        """
        Run one drain pass.

        Returns:
            Number of queued items provisioned successfully.
        """
        store = self._store
        if self._settings.capacity_unlimited:
            logger.info("Unlimited capacity; nothing to drain")
            return 0

        remaining = capacity_snapshot(store, self._settings).remaining
        if remaining == 0:
            logger.info("No capacity available; drain skipped")
            return 0

        items = store.list_queued(remaining)
        logger.info(f"Draining up to {remaining} queued item(s); {len(items)} fetched")

        drained = 0
        for item in items:
            if not store.claim_queue_item(item.id):
                logger.info(f"Queue item {item.id} claimed by another drain run")
                record_drain_item("skipped")
                continue
            if await self._process(item):
                drained += 1

        logger.info(f"Drain finished: {drained}/{len(items)} provisioned")
        return drained

    async def _process(self, item) -> bool:
        store = self._store
        business_id = item.business_id
        try:
            business = store.get_business(business_id)
            if business is None or not business.carrier_account_id:
                raise ValueError("Business missing Surge account")

            if business.from_number and business.verification_id:
                logger.info(f"Business {business_id} already provisioned; closing queue item {item.id}")
                store.finish_queue_item(item.id, QueueStatus.DONE)
                record_drain_item("done")
                return False

            if not business.from_number and not store.reserve_capacity_slot(business_id, self._settings.SURGE_MAX_NUMBERS):
                # Capacity was taken by a direct provisioning call since the run started
                store.finish_queue_item(item.id, QueueStatus.QUEUED)
                record_drain_item("skipped")
                logger.info(f"No capacity slot for queue item {item.id}; left queued")
                return False

            try:
                await purchase_and_submit(store, self._carrier, business, CampaignInfo.from_business(business))
            except Exception:
                store.db.rollback()
                if not store.get_business(business_id).from_number:
                    store.release_capacity_slot(business_id)
                raise
        except Exception as e:
            logger.error(f"Queue item {item.id} for business {business_id} failed: {e}")
            store.finish_queue_item(item.id, QueueStatus.ERROR, error=str(e))
            record_drain_item("error")
            return False

        store.finish_queue_item(item.id, QueueStatus.DONE)
        record_drain_item("done")
        logger.info(f"Queue item {item.id} provisioned for business {business_id}")
        return True
