from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean,
    Column,
    Index,
    Integer,
    Numeric,
    String,
    Float,
    Text,
    ForeignKey,
    text,
)


Base = declarative_base()

# Event lifecycle
EVENT_DRAFT = "draft"
EVENT_PUBLISHED = "published"
EVENT_CANCELLED = "cancelled"
EVENT_COMPLETED = "completed"

# Ticket lifecycle
TICKET_PENDING = "pending"
TICKET_PAID = "paid"
TICKET_SCANNED = "scanned"
TICKET_CANCELLED = "cancelled"

# Payment lifecycle
PAYMENT_PENDING = "pending"
PAYMENT_SUCCESS = "success"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

_ACTIVE_TICKET = text("status IN ('pending', 'paid')")


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    creator_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    starts_at = Column(Float, nullable=False)
    ends_at = Column(Float, nullable=False)
    capacity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)  # major units
    currency = Column(String, nullable=False, default="NGN")

    # draft | published | cancelled | completed
    status = Column(String, nullable=False, default=EVENT_DRAFT)

    # bumped under the per-event serialization boundary (admission, paid)
    lock_version = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)

    # pending | paid | scanned | cancelled
    status = Column(String, nullable=False, default=TICKET_PENDING)
    redemption_token = Column(String, nullable=False, unique=True)
    artifact = Column(Text, nullable=True)  # data:image/png;base64,...
    scanned_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        # at most one pending/paid ticket per (user, event)
        Index(
            "uq_tickets_active_owner", "user_id", "event_id",
            unique=True,
            postgresql_where=_ACTIVE_TICKET,
            sqlite_where=_ACTIVE_TICKET,
        ),
        Index("ix_tickets_event_status", "event_id", "status"),
    )


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=False)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="NGN")

    # pending | success | failed | refunded
    status = Column(String, nullable=False, default=PAYMENT_PENDING)
    gateway_reference = Column(String, nullable=True, unique=True)
    # audit copy of the gateway's charge data (JSON)
    gateway_payload = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    # settled but never admitted (sold out, ticket cancelled)
    refund_required = Column(Boolean, nullable=False, default=False)


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)
