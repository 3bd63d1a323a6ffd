"""Surge carrier client using raw HTTP via httpx.

Wraps the carrier calls the provisioning lifecycle needs: account
resolution, toll-free number purchase, verification campaign submission,
capability status lookup and message sending. Webhook signature
verification lives in ``tollfree_sms.utils``.

No Surge SDK dependency -- uses httpx.AsyncClient for direct API calls.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from tollfree_sms.compliance import FOOTER
from tollfree_sms.config import Settings
from tollfree_sms.errors import CarrierError
from tollfree_sms.metrics import record_carrier_call
from tollfree_sms.models import VerificationStatus
from tollfree_sms.utils import mask_phone

logger = logging.getLogger(__name__)

__all__ = [
    "AccountStrategy",
    "CampaignInfo",
    "CapabilityStatus",
    "CarrierClient",
    "PurchasedNumber",
    "SentMessage",
    "SharedAccountStrategy",
    "SubaccountStrategy",
    "VerificationSubmission",
    "map_vendor_status",
]

USE_CASE_CATEGORIES: tuple[str, ...] = (
    "account_notifications",
    "customer_care",
    "two_way_conversational",
)

_ACTIVE = frozenset({"active", "approved", "verified"})
_DISABLED = frozenset({"rejected", "disabled", "failed"})
_ACTION_NEEDED = frozenset({"action_required", "incomplete"})


def map_vendor_status(vendor_status: Optional[str]) -> str:
    """Map the carrier's verification vocabulary onto the local status enum."""
    status = (vendor_status or "").strip().lower()
    if status in _ACTIVE:
        return VerificationStatus.ACTIVE
    if status in _DISABLED:
        return VerificationStatus.DISABLED
    if status in _ACTION_NEEDED:
        return VerificationStatus.ACTION_NEEDED
    return VerificationStatus.PENDING


# -- Result types -----------------------------------------------------------


@dataclass(frozen=True)
class PurchasedNumber:
    phone_id: str
    e164: str


@dataclass(frozen=True)
class VerificationSubmission:
    verification_id: str
    status: str = VerificationStatus.PENDING


@dataclass(frozen=True)
class CapabilityStatus:
    status: str
    details: Optional[str] = None
    vendor_status: Optional[str] = None


@dataclass(frozen=True)
class SentMessage:
    message_id: str
    status: str


@dataclass(frozen=True)
class CampaignInfo:
    """Brand facts a verification campaign is generated from."""

    brand_name: str
    opt_in_evidence_url: str = ""
    opt_in_method: Optional[str] = None
    website: Optional[str] = None
    terms_url: Optional[str] = None
    privacy_url: Optional[str] = None
    estimated_monthly_volume: int = 100
    contact_email: Optional[str] = None

    @classmethod
    def from_business_info(cls, info: Any) -> "CampaignInfo":
        """Build from a validated ``schemas.BusinessInfo``."""
        return cls(
            brand_name=info.display_name,
            opt_in_evidence_url=str(info.opt_in_evidence_url),
            opt_in_method=info.opt_in_method,
            website=str(info.website) if info.website else None,
            terms_url=str(info.terms_url) if info.terms_url else None,
            privacy_url=str(info.privacy_url) if info.privacy_url else None,
            estimated_monthly_volume=info.estimated_monthly_volume,
            contact_email=info.contact_email,
        )

    @classmethod
    def from_business(cls, business: Any) -> "CampaignInfo":
        """Build from the onboarding snapshot stored on a Business row."""
        return cls(
            brand_name=business.brand_name or business.legal_name or business.name or "Your Business",
            opt_in_evidence_url=business.opt_in_evidence_url or "",
            opt_in_method=business.opt_in_method,
            website=business.website,
            terms_url=business.terms_url,
            privacy_url=business.privacy_url,
            estimated_monthly_volume=int(business.estimated_monthly_volume or 100),
            contact_email=business.contact_email,
        )

    def use_case_summary(self) -> str:
        return (
            f"Transactional notifications and customer care for {self.brand_name}. "
            "Examples include service confirmations and review/feedback follow-ups. "
            "No promotional content. All messages honor STOP/HELP."
        )

    def sample_messages(self) -> list[str]:
        """Sample messages for carrier review; each carries the STOP/HELP disclosure."""
        return [
            f"Hi {{First}}, it's {self.brand_name}. Thanks again for choosing us today. "
            f"Would you leave a quick review? {{link}} {FOOTER} Msg & data rates may apply.",
            f"{self.brand_name} support: We received your feedback and we're on it. "
            f"Reply here with any details. {FOOTER} Msg & data rates may apply.",
        ]

    def consent_flow(self) -> str:
        method = self.opt_in_method or "our website form"
        location = self.opt_in_evidence_url or self.website or self.terms_url or ""
        return (
            f"Customers opt in through {method}. The opt-in form is located at {location} "
            "and clearly explains what messages they will receive. "
            "We collect explicit consent before sending any messages."
        )


# -- Account strategies -----------------------------------------------------


class AccountStrategy(ABC):
    """Decides which carrier account a business provisions under."""

    @abstractmethod
    async def resolve(self, client: "CarrierClient", business: Any) -> str:
        """Return the carrier account id for *business*."""


class SharedAccountStrategy(AccountStrategy):
    """Every business shares the configured master account."""

    def __init__(self, account_id: str) -> None:
        self._account_id = account_id

    async def resolve(self, client: "CarrierClient", business: Any) -> str:
        if not self._account_id:
            raise CarrierError("SURGE_ACCOUNT_ID not configured")
        logger.info(f"Using master account for business={business.id}")
        return self._account_id


class SubaccountStrategy(AccountStrategy):
    """Each business gets its own carrier sub-account."""

    async def resolve(self, client: "CarrierClient", business: Any) -> str:
        name = business.brand_name or business.legal_name or business.name or business.id
        data = await client.request(
            "create_account",
            "POST",
            "/accounts",
            json={"name": name, "metadata": {"business_id": business.id}},
        )
        account_id = data.get("id")
        if not account_id:
            raise CarrierError("Carrier did not return an account id", details=data)
        logger.info(f"Created sub-account={account_id} for business={business.id}")
        return str(account_id)


# -- Client -----------------------------------------------------------------


def _error_message(data: Any, status_code: int, text: str) -> str:
    """Pull the carrier's own error text out of an error response."""
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if data.get("message"):
            return str(data["message"])
        if error:
            return str(error)
    return f"Surge API error: HTTP {status_code} - {text}"


class CarrierClient:
    """Async client for the Surge REST API.

    Args:
        settings: Frozen application settings.
        http_client: Override for testing (e.g. an ``httpx.MockTransport`` client).
        account_strategy: Override the strategy picked from
            ``SURGE_USE_SUBACCOUNTS``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
        account_strategy: AccountStrategy | None = None,
    ) -> None:
        self._settings = settings
        self._base_url = settings.SURGE_API_BASE.rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {settings.SURGE_API_KEY}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(settings.SURGE_TIMEOUT_SECONDS),
        )
        self._owns_client = http_client is None
        if account_strategy is None:
            account_strategy = (
                SubaccountStrategy()
                if settings.SURGE_USE_SUBACCOUNTS
                else SharedAccountStrategy(settings.SURGE_ACCOUNT_ID)
            )
        self._account_strategy = account_strategy

    @property
    def account_strategy(self) -> AccountStrategy:
        return self._account_strategy

    async def close(self) -> None:
        """Close the underlying HTTP client if we own it."""
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def request(self, operation: str, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Perform one carrier call and decode its JSON body.

        Raises:
            CarrierError: On transport failures, non-2xx responses or
                non-JSON bodies. The carrier's message is kept verbatim.
        """
        if not self._settings.SURGE_API_KEY:
            record_carrier_call(operation, "not_configured")
            raise CarrierError("SURGE_API_KEY not configured")

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            record_carrier_call(operation, "transport_error")
            logger.error(f"Carrier {operation} failed: {e}")
            raise CarrierError(f"Surge API unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            record_carrier_call(operation, "rejected")
            message = _error_message(data, response.status_code, response.text)
            logger.warning(f"Carrier {operation} rejected status={response.status_code} error={message}")
            raise CarrierError(
                message,
                details=data if data is not None else response.text,
                carrier_status=response.status_code,
            )

        if not isinstance(data, dict):
            record_carrier_call(operation, "bad_response")
            raise CarrierError(
                f"Surge API error: HTTP {response.status_code} - {response.text}",
                carrier_status=response.status_code,
            )

        record_carrier_call(operation, "ok")
        return data

    # -- Public API ----------------------------------------------------------

    async def resolve_account(self, business: Any) -> str:
        """Return the carrier account id *business* should provision under."""
        return await self._account_strategy.resolve(self, business)

    async def purchase_number(self, account_id: str) -> PurchasedNumber:
        """Buy a toll-free number on *account_id*."""
        logger.info(f"Purchasing toll-free number for account={account_id}")
        data = await self.request(
            "purchase_number",
            "POST",
            f"/accounts/{account_id}/phone_numbers",
            json={"type": "toll_free"},
        )
        phone_id, e164 = data.get("id"), data.get("number")
        if not phone_id or not e164:
            raise CarrierError("Carrier did not return a phone number", details=data)
        logger.info(f"Purchased toll-free number={e164} phone_id={phone_id}")
        return PurchasedNumber(phone_id=str(phone_id), e164=str(e164))

    async def submit_verification(self, account_id: str, campaign: CampaignInfo) -> VerificationSubmission:
        """Submit the toll-free verification campaign for *account_id*.

        Returns:
            The campaign id; status always starts as ``pending``.
        """
        body = {
            "description": campaign.use_case_summary(),
            "consent_flow": campaign.consent_flow(),
            "message_samples": campaign.sample_messages(),
            "use_cases": list(USE_CASE_CATEGORIES),
            "volume": "low",
            "estimated_monthly_volume": campaign.estimated_monthly_volume,
            "opt_in_evidence_url": campaign.opt_in_evidence_url,
            "privacy_policy_url": campaign.privacy_url or self._settings.DEFAULT_PRIVACY_URL,
            "terms_and_conditions_url": campaign.terms_url or self._settings.DEFAULT_TERMS_URL,
            "includes": ["links"],
        }
        logger.info(f"Creating verification campaign for account={account_id} brand={campaign.brand_name}")
        data = await self.request("submit_verification", "POST", f"/accounts/{account_id}/campaigns", json=body)
        verification_id = data.get("id")
        if not verification_id:
            raise CarrierError("Carrier did not return a campaign id", details=data)
        logger.info(f"Verification campaign created id={verification_id}")
        return VerificationSubmission(verification_id=str(verification_id))

    async def get_capability_status(self, account_id: str) -> CapabilityStatus:
        """Look up the toll-free messaging capability of *account_id*."""
        data = await self.request(
            "capability_status",
            "GET",
            f"/accounts/{account_id}/status",
            params=[("capabilities", "local_messaging"), ("capabilities", "toll_free_messaging")],
        )
        capability = (data.get("capabilities") or {}).get("toll_free_messaging") or {}
        vendor_status = capability.get("status")
        return CapabilityStatus(
            status=map_vendor_status(vendor_status),
            details=capability.get("message"),
            vendor_status=vendor_status,
        )

    async def send_message(self, account_id: str, from_: str, to: str, body: str) -> SentMessage:
        """Send one SMS.

        Args:
            account_id: Carrier account owning *from_*.
            from_: Sender number in E.164 format.
            to: Destination number in E.164 format.
            body: Message text, already compliance-checked by the caller.
        """
        logger.info(f"Sending SMS from={from_} to={mask_phone(to)} chars={len(body)}")
        data = await self.request(
            "send_message",
            "POST",
            f"/accounts/{account_id}/messages",
            json={
                "body": body,
                "conversation": {"contact": {"phone_number": to}},
                "metadata": {"from_number": from_},
            },
        )
        message_id = data.get("id")
        if not message_id:
            raise CarrierError("Carrier did not return a message id", details=data)
        logger.info(f"SMS sent message_id={message_id}")
        return SentMessage(message_id=str(message_id), status=data.get("status") or "queued")
