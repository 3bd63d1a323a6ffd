"""
Compliant outbound SMS sending.

A business may only send once its number is verified, never to an
opted-out contact, and always with the STOP/HELP footer.
"""

import logging

from tollfree_sms.carrier import CarrierClient, SentMessage
from tollfree_sms.compliance import ensure_footer
from tollfree_sms.errors import ConflictError, ValidationError
from tollfree_sms.models import Direction, VerificationStatus
from tollfree_sms.storage import Store
from tollfree_sms.utils import mask_phone, normalize_to_e164

logger = logging.getLogger(__name__)

_GATE_MESSAGES = {
    VerificationStatus.NONE: "SMS sending not available",
    VerificationStatus.PENDING: "Your toll-free number is pending verification",
    VerificationStatus.DISABLED: "SMS sending is disabled for this business",
}


def sending_gate_message(business) -> str:
    if business.verification_status == VerificationStatus.ACTION_NEEDED:
        return "Verification requires action: " + (business.last_verification_error or "Please contact support")
    return _GATE_MESSAGES.get(business.verification_status, "SMS sending not available")


async def send_sms(store: Store, carrier: CarrierClient, business, to: str, body: str) -> tuple[SentMessage, str]:
    """
    Send one outbound SMS for a business and store it.

    Returns:
        Tuple of (carrier result, normalized recipient)

    Raises:
        ConflictError: no number, verification not active, or recipient opted out
        ValidationError: recipient is not a valid phone number
        CarrierError: the carrier rejected the send
    """
    if not business.from_number:
        raise ConflictError("SMS not enabled for this business. Please provision an SMS number first")

    if business.verification_status != VerificationStatus.ACTIVE:
        raise ConflictError(
            sending_gate_message(business),
            details={"status": business.verification_status},
        )

    normalized_to = normalize_to_e164(to)
    if not normalized_to:
        raise ValidationError(
            "Invalid phone number",
            details=[{"field": "to", "message": "Phone number must be in E.164 format (e.g., +14155551234)"}],
        )

    contact = store.get_contact(business.id, normalized_to)
    if contact is not None and contact.opted_out:
        raise ConflictError("Recipient has opted out of SMS communications")

    compliant_body = ensure_footer(body)
    logger.info(f"Sending SMS from {business.from_number} to {mask_phone(normalized_to)}")

    sent = await carrier.send_message(business.carrier_account_id, business.from_number, normalized_to, compliant_body)

    store.upsert_message(
        sent.message_id,
        business_id=business.id,
        direction=Direction.OUTBOUND,
        channel="sms",
        body=compliant_body,
        status=sent.status,
        error=None,
    )
    return sent, normalized_to
