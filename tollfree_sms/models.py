"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import Boolean, Column, Integer, String, Text, UniqueConstraint

from tollfree_sms.storage import Base


class VerificationStatus:
    """Local toll-free verification states."""
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    ACTION_NEEDED = "action_needed"
    DISABLED = "disabled"

    ALL = (NONE, PENDING, ACTIVE, ACTION_NEEDED, DISABLED)


class QueueStatus:
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class Direction:
    INBOUND = "inbound"
    OUTBOUND = "outbound"


def _new_id() -> str:
    return str(uuid.uuid4())


class Business(Base):
    """
    A business that sends SMS from its own toll-free number.

    Table: businesses
    from_number is unique: one provisioned number belongs to one business.
    """
    __tablename__ = "businesses"

    id = Column(String, primary_key=True, default=_new_id)
    owner_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=True)
    brand_name = Column(String, nullable=True)

    # Carrier state
    from_number = Column(String, nullable=True, unique=True)
    carrier_account_id = Column(String, nullable=True, index=True)
    carrier_phone_id = Column(String, nullable=True)
    sender_type = Column(String, nullable=True)
    verification_status = Column(String, nullable=False, default=VerificationStatus.NONE, index=True)
    last_verification_error = Column(Text, nullable=True)
    verification_id = Column(String, nullable=True)
    # Last reconciler poll; never-polled businesses (NULL) go first
    status_checked_at = Column(String, nullable=True, index=True)

    # Onboarding snapshot
    legal_name = Column(String, nullable=True)
    website = Column(String, nullable=True)
    contact_name = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    contact_phone = Column(String, nullable=True)
    address_line1 = Column(String, nullable=True)
    address_line2 = Column(String, nullable=True)
    address_city = Column(String, nullable=True)
    address_state = Column(String, nullable=True)
    address_postal_code = Column(String, nullable=True)
    address_country = Column(String, nullable=True)
    ein = Column(String, nullable=True)
    sole_prop = Column(Boolean, nullable=False, default=False)
    estimated_monthly_volume = Column(Integer, nullable=True)
    opt_in_method = Column(String, nullable=True)
    opt_in_evidence_url = Column(String, nullable=True)
    terms_url = Column(String, nullable=True)
    privacy_url = Column(String, nullable=True)

    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)


class Contact(Base):
    """
    An SMS counterpart of a business.

    Table: contacts
    Unique on (business_id, phone_e164): upserted, never duplicated.
    """
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("business_id", "phone_e164", name="uq_contacts_business_phone"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(String, nullable=False, index=True)
    phone_e164 = Column(String, nullable=False)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    opted_out = Column(Boolean, nullable=False, default=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Message(Base):
    """
    An inbound or outbound SMS.

    Table: messages
    carrier_message_id is unique (ensures idempotency of webhook replays).
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    carrier_message_id = Column(String, nullable=False, unique=True, index=True)
    business_id = Column(String, nullable=True, index=True)
    direction = Column(String, nullable=True)
    channel = Column(String, nullable=True, default="sms")
    body = Column(Text, nullable=True)
    status = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class ProvisioningQueueItem(Base):
    """
    A provisioning request waiting for global capacity.

    Table: phone_provisioning_queue
    """
    __tablename__ = "phone_provisioning_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=QueueStatus.QUEUED, index=True)
    error = Column(Text, nullable=True)
    created_at = Column(String, nullable=False, index=True)
    updated_at = Column(String, nullable=False)


class CapacitySlot(Base):
    """
    One reserved unit of the global toll-free number capacity.

    Table: capacity_slots
    slot is the primary key (1..SURGE_MAX_NUMBERS), business_id is unique.
    """
    __tablename__ = "capacity_slots"

    slot = Column(Integer, primary_key=True, autoincrement=False)
    business_id = Column(String, nullable=False, unique=True)
    created_at = Column(String, nullable=False)
