"""
Carrier webhook routing.

Verifies the Surge signature, classifies the event, and dispatches it to
one of three handlers (inbound message, delivery status, verification
update). Each handler reports a HandlerResult; WebhookRouter.route is the
only place where an exception is turned into an acknowledgment, so the
carrier always gets a fast 200 for an authentic delivery and never
retries an event that cannot succeed.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from tollfree_sms.carrier import CarrierClient, map_vendor_status
from tollfree_sms.compliance import (
    STOP_CONFIRMATION,
    help_message,
    matches_help_keyword,
    matches_stop_keyword,
)
from tollfree_sms.config import Settings
from tollfree_sms.metrics import record_webhook_outcome
from tollfree_sms.models import Direction
from tollfree_sms.storage import Store
from tollfree_sms.utils import mask_phone, verify_signature

logger = logging.getLogger(__name__)


class EventKind:
    INBOUND_MESSAGE = "inbound_message"
    DELIVERY_STATUS = "delivery_status"
    VERIFICATION_UPDATE = "verification_update"
    UNKNOWN = "unknown"
    NONE = "none"


class Outcome:
    PROCESSED = "processed"
    DROPPED = "dropped"
    IGNORED = "ignored"
    FAILED = "failed"
    INVALID_SIGNATURE = "invalid_signature"


EVENT_KINDS = {
    "message.received": EventKind.INBOUND_MESSAGE,
    "inbound": EventKind.INBOUND_MESSAGE,
    "message.queued": EventKind.DELIVERY_STATUS,
    "message.sent": EventKind.DELIVERY_STATUS,
    "message.delivered": EventKind.DELIVERY_STATUS,
    "message.failed": EventKind.DELIVERY_STATUS,
    "delivery_status": EventKind.DELIVERY_STATUS,
    "verification.updated": EventKind.VERIFICATION_UPDATE,
    "capability.updated": EventKind.VERIFICATION_UPDATE,
    "verification_status": EventKind.VERIFICATION_UPDATE,
}


def classify_event(event_type: Optional[str]) -> str:
    if not event_type:
        return EventKind.UNKNOWN
    return EVENT_KINDS.get(event_type, EventKind.UNKNOWN)


@dataclass
class HandlerResult:
    """
    What a handler did with one event.

    side_effect_failures lists best-effort actions (auto-replies) that
    failed without aborting the handler.
    """
    kind: str
    outcome: str
    detail: Optional[str] = None
    carrier_message_id: Optional[str] = None
    side_effect_failures: list = field(default_factory=list)


@dataclass
class WebhookOutcome:
    authenticated: bool
    result: HandlerResult
    event_type: Optional[str] = None


def _phone(value: Any) -> Optional[str]:
    """Event phone fields arrive either as a string or as {"phone_number": ...}."""
    if isinstance(value, dict):
        value = value.get("phone_number")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


class WebhookRouter:
    """
    Routes authenticated carrier events to their handlers.

    Args:
        store: Record store bound to the request's session
        carrier: Carrier client used for auto-replies
        settings: Frozen settings (signing secret, support email)
    """

    def __init__(self, store: Store, carrier: CarrierClient, settings: Settings):
        self._store = store
        self._carrier = carrier
        self._settings = settings
        self._handlers: dict[str, Callable[[dict], Awaitable[HandlerResult]]] = {
            EventKind.INBOUND_MESSAGE: self.handle_inbound,
            EventKind.DELIVERY_STATUS: self.handle_delivery_status,
            EventKind.VERIFICATION_UPDATE: self.handle_verification_update,
        }

    async def route(self, headers: Mapping[str, str], raw_body: Union[bytes, str]) -> WebhookOutcome:
        """
        Verify, classify and dispatch one webhook delivery.

        Never raises for an authentic delivery: handler failures come back
        as a FAILED result for the caller to acknowledge.
        """
        if not verify_signature(
            headers,
            raw_body,
            self._settings.SURGE_WEBHOOK_SECRET,
            tolerance_seconds=self._settings.SURGE_WEBHOOK_TOLERANCE_SECONDS,
        ):
            record_webhook_outcome(EventKind.NONE, Outcome.INVALID_SIGNATURE)
            return WebhookOutcome(
                authenticated=False,
                result=HandlerResult(EventKind.NONE, Outcome.INVALID_SIGNATURE),
            )

        event_type = None
        kind = EventKind.UNKNOWN
        try:
            event = json.loads(raw_body)
            if not isinstance(event, dict):
                raise ValueError("webhook body must be a JSON object")
            event_type = event.get("type") or event.get("event")
            kind = classify_event(event_type)
            logger.info(f"Received carrier event: {event_type} ({kind})")

            handler = self._handlers.get(kind)
            if handler is None:
                logger.info(f"Unhandled event type: {event_type}")
                result = HandlerResult(kind, Outcome.IGNORED, detail=f"unhandled event type {event_type!r}")
            else:
                data = event.get("data") or {}
                if not isinstance(data, dict):
                    raise ValueError("event data must be a JSON object")
                result = await handler(data)
        except Exception as e:
            self._store.db.rollback()
            logger.exception(f"Error processing webhook event {event_type}: {e}")
            result = HandlerResult(kind, Outcome.FAILED, detail=str(e))

        if result.side_effect_failures:
            logger.warning(
                "Webhook side effects failed",
                extra={"event_type": event_type, "failures": result.side_effect_failures},
            )
        record_webhook_outcome(result.kind, result.outcome)
        return WebhookOutcome(authenticated=True, result=result, event_type=event_type)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def handle_inbound(self, data: dict) -> HandlerResult:
        """
        Store an inbound SMS and apply STOP/HELP handling.
        """
        kind = EventKind.INBOUND_MESSAGE
        to = _phone(data.get("to"))
        from_ = _phone(data.get("from"))
        body = data.get("body")
        carrier_message_id = data.get("id")

        logger.info(f"Inbound SMS from {mask_phone(from_)} to {to}")

        if not to or not from_ or not body or not carrier_message_id:
            logger.error("Missing required fields in inbound event")
            return HandlerResult(kind, Outcome.DROPPED, detail="missing required fields", carrier_message_id=carrier_message_id)

        business = self._store.get_business_by_from_number(to)
        if business is None:
            logger.error(f"No business found for number: {to}")
            return HandlerResult(kind, Outcome.DROPPED, detail="no business for number", carrier_message_id=carrier_message_id)

        self._store.upsert_contact(business.id, from_)
        failures = []

        if matches_stop_keyword(body):
            logger.info(f"STOP keyword detected from {mask_phone(from_)}")
            self._store.set_contact_opted_out(business.id, from_, True)
            failure = await self._auto_reply(business, from_, STOP_CONFIRMATION, "stop_confirmation")
            if failure:
                failures.append(failure)

        if matches_help_keyword(body):
            logger.info(f"HELP keyword detected from {mask_phone(from_)}")
            failure = await self._auto_reply(business, from_, help_message(self._settings.SUPPORT_EMAIL), "help_reply")
            if failure:
                failures.append(failure)

        self._store.upsert_message(
            carrier_message_id,
            business_id=business.id,
            direction=Direction.INBOUND,
            channel="sms",
            body=body,
            status="received",
            error=None,
        )
        logger.info(f"Inbound message processed: {carrier_message_id}")
        return HandlerResult(
            kind,
            Outcome.PROCESSED,
            carrier_message_id=carrier_message_id,
            side_effect_failures=failures,
        )

    async def handle_delivery_status(self, data: dict) -> HandlerResult:
        """
        Record the latest delivery status for a message.

        Blind overwrite keyed by carrier id: events are applied in arrival
        order, not by event timestamp.
        """
        kind = EventKind.DELIVERY_STATUS
        carrier_message_id = data.get("id")
        status = data.get("status")

        logger.info(f"Delivery status update: {carrier_message_id} -> {status}")

        if not carrier_message_id:
            logger.error("Missing message ID in delivery status event")
            return HandlerResult(kind, Outcome.DROPPED, detail="missing message id")

        self._store.upsert_message(carrier_message_id, status=status, error=_text(data.get("error")))
        return HandlerResult(kind, Outcome.PROCESSED, carrier_message_id=carrier_message_id)

    async def handle_verification_update(self, data: dict) -> HandlerResult:
        """
        Apply a verification/capability status change to every business on the account.
        """
        kind = EventKind.VERIFICATION_UPDATE
        account_id = data.get("account_id")
        vendor_status = data.get("status")

        logger.info(f"Verification update for account {account_id}: {vendor_status}")

        if not account_id or not vendor_status:
            logger.error("Missing required fields in verification event")
            return HandlerResult(kind, Outcome.DROPPED, detail="missing account_id or status")

        mapped = map_vendor_status(vendor_status)
        error = _text(data.get("error")) or _text(data.get("details"))

        businesses = self._store.list_businesses_by_account(account_id)
        for business in businesses:
            self._store.update_business(
                business.id,
                verification_status=mapped,
                last_verification_error=error,
            )
        if not businesses:
            return HandlerResult(kind, Outcome.DROPPED, detail=f"no business for account {account_id}")

        logger.info(f"Updated {len(businesses)} business(es) to {mapped}")
        return HandlerResult(kind, Outcome.PROCESSED, detail=f"{len(businesses)} business(es) -> {mapped}")

    async def _auto_reply(self, business, to: str, body: str, purpose: str) -> Optional[dict]:
        """
        Send one best-effort reply. Returns a failure record instead of raising.
        """
        if not business.carrier_account_id or not business.from_number:
            logger.error(f"Cannot send {purpose}: business {business.id} has no carrier account")
            return {"action": purpose, "error": "business has no carrier account"}
        try:
            sent = await self._carrier.send_message(business.carrier_account_id, business.from_number, to, body)
        except Exception as e:
            logger.error(f"Error sending {purpose} auto-reply: {e}")
            return {"action": purpose, "error": str(e)}
        logger.info(f"Auto-reply {purpose} sent to {mask_phone(to)}: {sent.message_id}")
        return None
