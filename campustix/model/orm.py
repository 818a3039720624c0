from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    CheckConstraint,
    Index,
    text,
)


Base = declarative_base()

# event status
EV_DRAFT = "draft"
EV_PUBLISHED = "published"
EV_CANCELLED = "cancelled"
EV_COMPLETED = "completed"

# registration status
PENDING_PAYMENT = "pending_payment"
CONFIRMED = "confirmed"
ATTENDED = "attended"
CANCELLED = "cancelled"
NO_SHOW = "no_show"

# payment status
PAY_PENDING = "pending"
PAY_PAID = "paid"
PAY_FAILED = "failed"
PAY_EXPIRED = "expired"
PAY_REFUNDED = "refunded"

# ticket status
TIX_VALID = "valid"
TIX_USED = "used"
TIX_CANCELLED = "cancelled"
TIX_EXPIRED = "expired"

# refund status
REFUND_NOT_APPLICABLE = "not_applicable"
REFUND_PENDING = "pending"
REFUND_REFUNDED = "refunded"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, nullable=False, index=True)
    organization_name = Column(String, nullable=False, default="")
    title = Column(String, nullable=False)
    venue = Column(String, nullable=True)

    # draft | published | cancelled | completed
    status = Column(String, nullable=False, default=EV_DRAFT)
    registration_opens_at = Column(Float, nullable=False)
    registration_closes_at = Column(Float, nullable=False)
    starts_at = Column(Float, nullable=False)
    ends_at = Column(Float, nullable=False)

    # overrides PAYMENT_EXPIRY_HOURS when set
    payment_window_hours = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class TicketTier(Base):
    __tablename__ = "ticket_tiers"
    __table_args__ = (
        CheckConstraint("sold >= 0", name="ck_tier_sold_nonneg"),
        CheckConstraint("reserved >= 0", name="ck_tier_reserved_nonneg"),
        CheckConstraint("sold + reserved <= quota", name="ck_tier_quota"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(
        String, ForeignKey("events.id"), nullable=False, index=True
    )
    name = Column(String, nullable=False)
    unit_price = Column(Integer, nullable=False)  # minor units
    quota = Column(Integer, nullable=False)
    sold = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        # at most one live registration per buyer and event
        Index(
            "uq_registrations_live_buyer_event",
            "buyer_id", "event_id",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
        Index("ix_registrations_status_expired_at", "status", "expired_at"),
    )
    id = Column(String, primary_key=True)
    registration_number = Column(String, nullable=False, unique=True)
    event_id = Column(
        String, ForeignKey("events.id"), nullable=False, index=True
    )
    tier_id = Column(String, ForeignKey("ticket_tiers.id"), nullable=False)
    # tier as it was sold; later price or name edits do not reach it
    tier_name = Column(String, nullable=False)
    unit_price = Column(Integer, nullable=False)
    organizer_id = Column(String, nullable=False, index=True)
    buyer_id = Column(String, nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)

    # pending_payment | confirmed | attended | cancelled | no_show
    status = Column(String, nullable=False, default=PENDING_PAYMENT)

    # {full_name, email, phone, student_id?, institution?, ...}
    participant = Column(JSON, nullable=False)
    custom_fields = Column(JSON, nullable=True)
    source = Column(String, nullable=True)
    referral_code = Column(String, nullable=True)

    # payment
    amount = Column(Integer, nullable=False)
    admin_fee = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    payment_status = Column(String, nullable=False, default=PAY_PENDING)
    payment_method = Column(String, nullable=True)
    external_order_id = Column(String, nullable=True, unique=True)
    transaction_id = Column(String, nullable=True)
    payment_token = Column(String, nullable=True)
    payment_redirect_url = Column(String, nullable=True)
    paid_at = Column(Float, nullable=True)
    expired_at = Column(Float, nullable=True)
    refund_status = Column(
        String, nullable=False, default=REFUND_NOT_APPLICABLE
    )
    refund_reason = Column(String, nullable=True)
    refund_requested_at = Column(Float, nullable=True)
    refunded_at = Column(Float, nullable=True)

    # ledger reference for the outstanding reservation
    hold_id = Column(String, nullable=True)

    # ticket
    ticket_number = Column(String, nullable=True, unique=True)
    ticket_credential = Column(Text, nullable=True)
    ticket_status = Column(String, nullable=True)
    qr_url = Column(String, nullable=True)
    pdf_url = Column(String, nullable=True)
    ticket_issued_at = Column(Float, nullable=True)

    # check-in
    checked_in = Column(Boolean, nullable=False, default=False)
    checked_in_at = Column(Float, nullable=True)
    checked_in_by = Column(String, nullable=True)
    checkin_location = Column(String, nullable=True)
    checkin_device = Column(String, nullable=True)

    # cancellation
    cancelled_at = Column(Float, nullable=True)
    cancelled_by = Column(String, nullable=True)
    cancel_reason = Column(String, nullable=True)

    # notification guards
    confirmation_sent = Column(Boolean, nullable=False, default=False)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    thank_you_sent = Column(Boolean, nullable=False, default=False)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class CheckInAudit(Base):
    """Append-only history of undone check-ins."""
    __tablename__ = "checkin_audit"
    id = Column(Integer, primary_key=True, autoincrement=True)
    registration_id = Column(
        String, ForeignKey("registrations.id"), nullable=False, index=True
    )
    event_id = Column(String, nullable=False)
    checked_in_at = Column(Float, nullable=True)
    checked_in_by = Column(String, nullable=True)
    checkin_location = Column(String, nullable=True)
    checkin_device = Column(String, nullable=True)
    undone_at = Column(Float, nullable=False)
    undone_by = Column(String, nullable=False)
    reason = Column(String, nullable=True)


class WebhookEvent(Base):
    """Provider notifications already applied, keyed by idempotency key."""
    __tablename__ = "webhook_events"
    idempotency_key = Column(String, primary_key=True)
    order_id = Column(String, nullable=True)
    kind = Column(String, nullable=False)
    received_at = Column(Float, nullable=False)
