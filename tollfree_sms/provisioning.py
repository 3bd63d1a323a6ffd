"""
Toll-free number provisioning workflow.

provision() turns a validated BusinessInfo into a purchased number with a
submitted verification campaign. Every step persists its result before the
next network call, so a failed run leaves resumable partial state (account
id, purchased number) instead of rolling back.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from tollfree_sms.carrier import CampaignInfo, CarrierClient
from tollfree_sms.config import Settings
from tollfree_sms.errors import CarrierError, ConflictError
from tollfree_sms.metrics import record_provisioning_outcome
from tollfree_sms.models import VerificationStatus
from tollfree_sms.schemas import BusinessInfo
from tollfree_sms.storage import Store

logger = logging.getLogger(__name__)

PROVISIONED_MESSAGE = "TFN provisioned and verification submitted. Pending approval."
QUEUED_MESSAGE = "All toll-free numbers are currently in use. Your request is queued and will be provisioned as capacity frees up."


@dataclass
class ProvisioningResult:
    queued: bool
    message: str
    from_number: Optional[str] = None
    status: Optional[str] = None


@dataclass
class CapacitySnapshot:
    in_use: int
    max: int
    queued: int

    @property
    def unlimited(self) -> bool:
        return self.max == 0

    @property
    def remaining(self) -> int:
        return max(0, self.max - self.in_use)


def capacity_snapshot(store: Store, settings: Settings) -> CapacitySnapshot:
    return CapacitySnapshot(
        in_use=store.count_numbers_in_use(),
        max=max(0, settings.SURGE_MAX_NUMBERS),
        queued=store.count_queued(),
    )


async def purchase_and_submit(store: Store, carrier: CarrierClient, business, campaign: CampaignInfo):
    """
    Buy a number (unless one is already persisted) and submit verification.

    The purchased number is persisted before the campaign submission so a
    submission failure can be retried without buying a second number.
    """
    account_id = business.carrier_account_id
    if not account_id:
        raise ConflictError("Business has no carrier account configured", details={"business_id": business.id})

    if not business.from_number:
        number = await carrier.purchase_number(account_id)
        business = store.update_business(
            business.id,
            carrier_phone_id=number.phone_id,
            from_number=number.e164,
            sender_type="tfn",
        )
        logger.info(f"Purchased TFN {number.e164} for business {business.id}")
    else:
        logger.info(f"Business {business.id} already holds {business.from_number}; resuming at verification")

    submission = await carrier.submit_verification(account_id, campaign)
    business = store.update_business(
        business.id,
        verification_status=VerificationStatus.PENDING,
        verification_id=submission.verification_id,
        last_verification_error=None,
    )
    logger.info(f"Verification submitted for business {business.id}: {submission.verification_id}")
    return business


class ProvisioningOrchestrator:
    """
    Runs the provisioning workflow for one business.

    Args:
        store: Record store bound to the request's session
        carrier: Carrier client
        settings: Frozen settings (capacity limit)
    """

    def __init__(self, store: Store, carrier: CarrierClient, settings: Settings):
        self._store = store
        self._carrier = carrier
        self._settings = settings

    async def provision(self, business_id: str, info: BusinessInfo) -> ProvisioningResult:
        """
        Provision a toll-free number, or queue the request when capacity is exhausted.

        Raises:
            NotFoundError: unknown business
            ConflictError: business is already fully provisioned
            CarrierError: the carrier rejected a step; persisted state is kept
        """
        store = self._store
        business = store.require_business(business_id)

        if business.from_number and business.verification_id:
            raise ConflictError(
                "Business already has an SMS number",
                details={"from_number": business.from_number, "status": business.verification_status},
            )

        logger.info(f"Starting SMS provisioning for business {business_id}")

        # Snapshot first: a queued request is later drained from these columns
        updates = info.snapshot()
        if not business.carrier_account_id:
            updates["carrier_account_id"] = await self._carrier.resolve_account(business)
        business = store.update_business(business_id, **updates)
        logger.info(f"Business {business_id} using carrier account {business.carrier_account_id}")

        reserved = False
        if not business.from_number and not self._settings.capacity_unlimited:
            if not self._reserve_capacity(business_id):
                store.enqueue_provisioning(business_id)
                record_provisioning_outcome("queued")
                return ProvisioningResult(queued=True, message=QUEUED_MESSAGE)
            reserved = True

        try:
            business = await purchase_and_submit(store, self._carrier, business, CampaignInfo.from_business_info(info))
        except CarrierError:
            record_provisioning_outcome("failed")
            business = store.get_business(business_id)
            if reserved and not business.from_number:
                store.release_capacity_slot(business_id)
            raise

        record_provisioning_outcome("provisioned")
        return ProvisioningResult(
            queued=False,
            message=PROVISIONED_MESSAGE,
            from_number=business.from_number,
            status=VerificationStatus.PENDING,
        )

    async def resubmit(self, business_id: str, info: BusinessInfo):
        """
        Submit a fresh verification campaign for an already provisioned account.

        Allowed from any verification status, disabled included.
        """
        business = self._store.require_business(business_id)
        if not business.carrier_account_id:
            raise ConflictError("Business has no carrier account configured", details={"business_id": business_id})

        submission = await self._carrier.submit_verification(
            business.carrier_account_id, CampaignInfo.from_business_info(info)
        )
        business = self._store.update_business(
            business_id,
            verification_status=VerificationStatus.PENDING,
            last_verification_error=None,
            verification_id=submission.verification_id,
            **info.snapshot(),
        )
        logger.info(f"Verification resubmitted for business {business_id}: {submission.verification_id}")
        return business

    def _reserve_capacity(self, business_id: str) -> bool:
        """
        Capacity guard: cheap count check, then an atomic slot reservation.
        """
        store = self._store
        limit = self._settings.SURGE_MAX_NUMBERS
        if store.holds_capacity_slot(business_id):
            return True
        in_use = store.count_numbers_in_use()
        if in_use >= limit:
            logger.info(f"Capacity exhausted ({in_use}/{limit}); queueing business {business_id}")
            return False
        return store.reserve_capacity_slot(business_id, limit)
