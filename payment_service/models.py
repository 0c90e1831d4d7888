from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from payment_service.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentMethod(str, Enum):
    REDIRECT_SIGNED = "redirect_signed"
    OAUTH_CAPTURE = "oauth_capture"
    MANUAL_PROOF = "manual_proof"
    ZERO_COST = "zero_cost"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    # Reserved for an out-of-band administrative action; nothing here reaches it.
    REFUNDED = "refunded"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
})

ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }),
}


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DROPPED = "dropped"
    SUSPENDED = "suspended"


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True)
    title = Column(String(255), nullable=False)
    price = Column(Numeric(18, 2), nullable=False, default=0)
    discount_price = Column(Numeric(18, 2), nullable=True)
    currency = Column(String(8), nullable=False, default="VND")
    is_published = Column(Boolean, nullable=False, default=True)
    status = Column(String(20), nullable=False, default="published")
    enrolled_count = Column(Integer, nullable=False, default=0)

    @property
    def effective_price(self):
        if self.discount_price is not None and self.discount_price > 0:
            return self.discount_price
        return self.price


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=EnrollmentStatus.ACTIVE.value)
    progress = Column(Integer, nullable=False, default=0)
    enrolled_at = Column(DateTime, nullable=False, default=utcnow)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True)
    code = Column(String(64), unique=True, index=True, nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(8), nullable=False)
    method = Column(String(32), nullable=False)
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    payment_date = Column(DateTime, nullable=True)
    details = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)

    history = relationship(
        "PaymentHistoryEntry",
        back_populates="transaction",
        order_by="PaymentHistoryEntry.id",
    )

    @property
    def is_terminal(self) -> bool:
        return TransactionStatus(self.status) in TERMINAL_STATUSES


class PaymentHistoryEntry(Base):
    __tablename__ = "payment_history"

    id = Column(Integer, primary_key=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False, index=True)
    status = Column(String(32), nullable=False)
    message = Column(String(255), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    transaction = relationship("Transaction", back_populates="history")
