import logging
from datetime import datetime, timezone
from typing import Any, Generator, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from tollfree_sms.config import get_settings
from tollfree_sms.errors import NotFoundError

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    """SQLite needs check_same_thread=False under FastAPI; in-memory SQLite also needs a single shared connection."""
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url:
        kwargs["poolclass"] = StaticPool
    return kwargs


engine = create_engine(
    get_settings().DATABASE_URL,
    echo=False,
    **_engine_kwargs(get_settings().DATABASE_URL),
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def utc_now() -> str:
    """Server timestamp, ISO-8601 UTC with microseconds so values sort in creation order."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug("Initializing database")
    try:
        # Import models to register them with Base.metadata
        from tollfree_sms import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("businesses"):
            logger.error("Database schema not applied: 'businesses' table not found")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


class Store:
    """
    Record store for businesses, contacts, messages and the provisioning queue.

    Every write commits immediately so that no transaction is ever open
    across a carrier network call.
    """

    def __init__(self, db: Session):
        self.db = db

    # -------------------------------------------------------------------------
    # Businesses
    # -------------------------------------------------------------------------

    def create_business(self, **fields: Any):
        from tollfree_sms.models import Business

        now = utc_now()
        business = Business(created_at=now, updated_at=now, **fields)
        self.db.add(business)
        self.db.commit()
        self.db.refresh(business)
        logger.info(f"Business created: {business.id}")
        return business

    def get_business(self, business_id: str):
        from tollfree_sms.models import Business

        return self.db.get(Business, business_id)

    def require_business(self, business_id: str):
        business = self.get_business(business_id)
        if business is None:
            raise NotFoundError("Business not found", details={"business_id": business_id})
        return business

    def get_business_by_from_number(self, from_number: str):
        from tollfree_sms.models import Business

        return self.db.query(Business).filter(Business.from_number == from_number).first()

    def list_businesses_by_account(self, account_id: str) -> list:
        from tollfree_sms.models import Business

        return (
            self.db.query(Business)
            .filter(Business.carrier_account_id == account_id)
            .order_by(Business.created_at.asc(), Business.id.asc())
            .all()
        )

    def list_pending_businesses(self, limit: int) -> list:
        """
        Pending businesses, least recently polled first.

        Each poll stamps status_checked_at, so successive batches rotate
        through every pending business.
        """
        from tollfree_sms.models import Business, VerificationStatus

        return (
            self.db.query(Business)
            .filter(Business.verification_status == VerificationStatus.PENDING)
            .order_by(
                Business.status_checked_at.asc().nullsfirst(),
                Business.created_at.asc(),
                Business.id.asc(),
            )
            .limit(limit)
            .all()
        )

    def mark_status_checked(self, business_id: str) -> None:
        """Stamp a reconciler poll without touching updated_at."""
        from tollfree_sms.models import Business

        self.db.execute(
            update(Business)
            .where(Business.id == business_id)
            .values(status_checked_at=utc_now())
        )
        self.db.commit()

    def update_business(self, business_id: str, **fields: Any):
        business = self.require_business(business_id)
        for key, value in fields.items():
            setattr(business, key, value)
        business.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(business)
        logger.debug(f"Business {business_id} updated: {sorted(fields)}")
        return business

    def count_numbers_in_use(self) -> int:
        from tollfree_sms.models import Business

        return (
            self.db.query(func.count(Business.id))
            .filter(Business.from_number.isnot(None))
            .scalar()
            or 0
        )

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    def get_contact(self, business_id: str, phone_e164: str):
        from tollfree_sms.models import Contact

        return (
            self.db.query(Contact)
            .filter(Contact.business_id == business_id, Contact.phone_e164 == phone_e164)
            .first()
        )

    def upsert_contact(
        self,
        business_id: str,
        phone_e164: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ):
        """
        Insert or touch the (business_id, phone_e164) contact.

        Never resets opted_out: a returning sender keeps their opt-out state.
        """
        from tollfree_sms.models import Contact

        contact = self.get_contact(business_id, phone_e164)
        if contact is None:
            now = utc_now()
            contact = Contact(
                business_id=business_id,
                phone_e164=phone_e164,
                name=name,
                email=email,
                created_at=now,
                updated_at=now,
            )
            self.db.add(contact)
            try:
                self.db.commit()
                self.db.refresh(contact)
                return contact
            except IntegrityError:
                # A concurrent delivery inserted the same contact first
                self.db.rollback()
                contact = self.get_contact(business_id, phone_e164)

        if name is not None:
            contact.name = name
        if email is not None:
            contact.email = email
        contact.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(contact)
        return contact

    def set_contact_opted_out(self, business_id: str, phone_e164: str, opted_out: bool = True):
        contact = self.upsert_contact(business_id, phone_e164)
        contact.opted_out = opted_out
        contact.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(contact)
        return contact

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def get_message_by_carrier_id(self, carrier_message_id: str):
        from tollfree_sms.models import Message

        return (
            self.db.query(Message)
            .filter(Message.carrier_message_id == carrier_message_id)
            .first()
        )

    def upsert_message(self, carrier_message_id: str, **fields: Any) -> Tuple[Any, bool]:
        """
        Insert or update a message keyed by the carrier's message id.

        Every field passed is written, including explicit None values, so a
        replayed event converges on the same row.

        Returns:
            Tuple of (message, created)
        """
        from tollfree_sms.models import Message

        message = self.get_message_by_carrier_id(carrier_message_id)
        if message is None:
            now = utc_now()
            message = Message(carrier_message_id=carrier_message_id, created_at=now, updated_at=now, **fields)
            self.db.add(message)
            try:
                self.db.commit()
                self.db.refresh(message)
                logger.info(f"Message stored: {carrier_message_id}")
                return message, True
            except IntegrityError:
                self.db.rollback()
                logger.info(f"Duplicate message detected: {carrier_message_id}")
                message = self.get_message_by_carrier_id(carrier_message_id)

        for key, value in fields.items():
            setattr(message, key, value)
        message.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(message)
        return message, False

    # -------------------------------------------------------------------------
    # Provisioning queue
    # -------------------------------------------------------------------------

    def enqueue_provisioning(self, business_id: str):
        """
        Queue a provisioning request, reusing the business's open item if any.
        """
        from tollfree_sms.models import ProvisioningQueueItem, QueueStatus

        existing = (
            self.db.query(ProvisioningQueueItem)
            .filter(
                ProvisioningQueueItem.business_id == business_id,
                ProvisioningQueueItem.status.in_([QueueStatus.QUEUED, QueueStatus.PROCESSING]),
            )
            .first()
        )
        if existing is not None:
            logger.info(f"Business {business_id} already queued (item {existing.id})")
            return existing

        now = utc_now()
        item = ProvisioningQueueItem(
            business_id=business_id,
            status=QueueStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        self.db.add(item)
        self.db.commit()
        self.db.refresh(item)
        logger.info(f"Business {business_id} queued for provisioning (item {item.id})")
        return item

    def list_queued(self, limit: int) -> list:
        """Oldest queued items first."""
        from tollfree_sms.models import ProvisioningQueueItem, QueueStatus

        return (
            self.db.query(ProvisioningQueueItem)
            .filter(ProvisioningQueueItem.status == QueueStatus.QUEUED)
            .order_by(ProvisioningQueueItem.created_at.asc(), ProvisioningQueueItem.id.asc())
            .limit(limit)
            .all()
        )

    def count_queued(self) -> int:
        from tollfree_sms.models import ProvisioningQueueItem, QueueStatus

        return (
            self.db.query(func.count(ProvisioningQueueItem.id))
            .filter(ProvisioningQueueItem.status == QueueStatus.QUEUED)
            .scalar()
            or 0
        )

    def claim_queue_item(self, item_id: int) -> bool:
        """
        Move an item from queued to processing.

        Compare-and-set on the status column: only one concurrent drain run
        can win the claim for a given item.
        """
        from tollfree_sms.models import ProvisioningQueueItem, QueueStatus

        result = self.db.execute(
            update(ProvisioningQueueItem)
            .where(
                ProvisioningQueueItem.id == item_id,
                ProvisioningQueueItem.status == QueueStatus.QUEUED,
            )
            .values(status=QueueStatus.PROCESSING, updated_at=utc_now())
        )
        self.db.commit()
        return result.rowcount == 1

    def finish_queue_item(self, item_id: int, status: str, error: Optional[str] = None):
        from tollfree_sms.models import ProvisioningQueueItem

        item = self.db.get(ProvisioningQueueItem, item_id)
        item.status = status
        item.error = error
        item.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(item)
        return item

    # -------------------------------------------------------------------------
    # Capacity reservations
    # -------------------------------------------------------------------------

    def holds_capacity_slot(self, business_id: str) -> bool:
        from tollfree_sms.models import CapacitySlot

        return (
            self.db.query(CapacitySlot.slot)
            .filter(CapacitySlot.business_id == business_id)
            .first()
            is not None
        )

    def reserve_capacity_slot(self, business_id: str, max_slots: int) -> bool:
        """
        Atomically claim one of the max_slots numbered capacity slots.

        Both slot and business_id are unique, so two concurrent requests can
        never hold the same slot and a business never holds two. Numbers
        bought without a slot (e.g. while capacity was unlimited) are given
        slots first, so they count against the limit.

        Returns:
            True if the business holds a slot afterwards, False if all
            slots are taken.
        """
        if self.holds_capacity_slot(business_id):
            return True

        for holder_id in self._unslotted_number_holders():
            if not self._claim_free_slot(holder_id, max_slots):
                logger.info(f"No capacity slot free for business {business_id} (max={max_slots})")
                return False

        return self._claim_free_slot(business_id, max_slots)

    def _unslotted_number_holders(self) -> list:
        from tollfree_sms.models import Business, CapacitySlot

        rows = (
            self.db.query(Business.id)
            .filter(
                Business.from_number.isnot(None),
                ~Business.id.in_(select(CapacitySlot.business_id)),
            )
            .order_by(Business.created_at.asc(), Business.id.asc())
            .all()
        )
        return [row[0] for row in rows]

    def _claim_free_slot(self, business_id: str, max_slots: int) -> bool:
        from tollfree_sms.models import CapacitySlot

        if self.holds_capacity_slot(business_id):
            return True

        taken = {row[0] for row in self.db.query(CapacitySlot.slot).all()}
        for slot in range(1, max_slots + 1):
            if slot in taken:
                continue
            self.db.add(CapacitySlot(slot=slot, business_id=business_id, created_at=utc_now()))
            try:
                self.db.commit()
                logger.info(f"Capacity slot {slot}/{max_slots} reserved for business {business_id}")
                return True
            except IntegrityError:
                self.db.rollback()
                if self.holds_capacity_slot(business_id):
                    return True
        logger.info(f"No capacity slot free for business {business_id} (max={max_slots})")
        return False

    def release_capacity_slot(self, business_id: str) -> None:
        from tollfree_sms.models import CapacitySlot

        deleted = (
            self.db.query(CapacitySlot)
            .filter(CapacitySlot.business_id == business_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if deleted:
            logger.info(f"Capacity slot released for business {business_id}")
