import logging
import secrets
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payment_service.auth import RequestContext
from payment_service.courses import CourseRepository
from payment_service.errors import AlreadyEnrolled, InvalidAmount, InvalidStateTransition
from payment_service.models import (
    ALLOWED_TRANSITIONS, PaymentHistoryEntry, PaymentMethod, Transaction,
    TransactionStatus, utcnow,
)

logger = logging.getLogger(__name__)

CODE_PREFIXES = {
    PaymentMethod.REDIRECT_SIGNED: "RDS",
    PaymentMethod.OAUTH_CAPTURE: "OAC",
    PaymentMethod.MANUAL_PROOF: "MPR",
    PaymentMethod.ZERO_COST: "FREE",
}


def generate_code(method: PaymentMethod) -> str:
    """Alphanumeric gateway reference, unique through the column's index."""
    return f"{CODE_PREFIXES[method]}{utcnow():%Y%m%d%H%M%S}{secrets.token_hex(4).upper()}"


class TransactionStore:
    """Persistence for payment attempts and their audit trail.

    ``transition`` is the only way a transaction changes status. It is a
    conditional UPDATE on the current status, so concurrent callers racing on
    the same row see exactly one winner.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: int, course_id: int, amount, currency: str,
               method: PaymentMethod) -> Transaction:
        method = PaymentMethod(method)
        amount = Decimal(str(amount))
        if method is not PaymentMethod.ZERO_COST and amount <= 0:
            raise InvalidAmount()
        if CourseRepository(self.db).find_active_enrollment(user_id, course_id):
            raise AlreadyEnrolled()

        now = utcnow()
        transaction = Transaction(
            code=generate_code(method),
            user_id=user_id,
            course_id=course_id,
            amount=amount,
            currency=currency,
            method=method.value,
            status=TransactionStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(transaction)
        self.db.commit()
        self.db.refresh(transaction)
        logger.info(
            "Created %s transaction id=%s code=%s user=%s course=%s",
            method.value, transaction.id, transaction.code, user_id, course_id,
        )
        return transaction

    def transition(self, transaction_id: int, from_status, to_status,
                   details: dict | None = None, notes: str | None = None) -> bool:
        """Move ``from_status -> to_status`` if the row is still in ``from_status``.

        Returns False when another caller already moved the row.
        """
        from_status = TransactionStatus(from_status)
        to_status = TransactionStatus(to_status)
        if to_status not in ALLOWED_TRANSITIONS.get(from_status, ()):
            raise InvalidStateTransition(
                f"Cannot move a transaction from {from_status.value} to {to_status.value}"
            )

        now = utcnow()
        values = {Transaction.status: to_status.value, Transaction.updated_at: now}
        if notes is not None:
            values[Transaction.notes] = notes
        if to_status is TransactionStatus.COMPLETED:
            values[Transaction.payment_date] = now
        if details:
            current = (
                self.db.query(Transaction.details)
                .filter(Transaction.id == transaction_id)
                .scalar()
            )
            values[Transaction.details] = {**(current or {}), **details}

        try:
            updated = (
                self.db.query(Transaction)
                .filter(
                    Transaction.id == transaction_id,
                    Transaction.status == from_status.value,
                )
                .update(values, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        if updated:
            logger.info(
                "Transaction %s moved %s -> %s", transaction_id, from_status.value, to_status.value
            )
        else:
            logger.info(
                "Transaction %s no longer %s, %s skipped",
                transaction_id, from_status.value, to_status.value,
            )
        return updated == 1

    def update_details(self, transaction_id: int, details: dict) -> bool:
        current = (
            self.db.query(Transaction.details)
            .filter(Transaction.id == transaction_id)
            .scalar()
        )
        updated = (
            self.db.query(Transaction)
            .filter(
                Transaction.id == transaction_id,
                Transaction.status == TransactionStatus.PENDING.value,
            )
            .update(
                {
                    Transaction.details: {**(current or {}), **details},
                    Transaction.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    def record_history(self, transaction_id: int, status: str, message: str,
                       context: RequestContext | None = None) -> PaymentHistoryEntry:
        entry = PaymentHistoryEntry(
            transaction_id=transaction_id,
            status=status,
            message=message[:255],
            ip_address=context.ip if context else None,
            user_agent=context.user_agent if context else None,
            created_at=utcnow(),
        )
        self.db.add(entry)
        self.db.commit()
        return entry

    def get(self, transaction_id: int) -> Transaction | None:
        return self.db.get(Transaction, transaction_id)

    def get_for_user(self, transaction_id: int, user_id: int) -> Transaction | None:
        return (
            self.db.query(Transaction)
            .filter(Transaction.id == transaction_id, Transaction.user_id == user_id)
            .first()
        )

    def find_by_code(self, code: str) -> Transaction | None:
        return self.db.query(Transaction).filter(Transaction.code == code).first()

    def list_pending(self, older_than: timedelta, user_id: int | None = None,
                     now=None) -> list[Transaction]:
        cutoff = (now or utcnow()) - older_than
        query = self.db.query(Transaction).filter(
            Transaction.status == TransactionStatus.PENDING.value,
            Transaction.created_at < cutoff,
        )
        if user_id is not None:
            query = query.filter(Transaction.user_id == user_id)
        return query.order_by(Transaction.created_at).all()

    def history(self, transaction_id: int, limit: int | None = None) -> list[PaymentHistoryEntry]:
        query = (
            self.db.query(PaymentHistoryEntry)
            .filter(PaymentHistoryEntry.transaction_id == transaction_id)
            .order_by(PaymentHistoryEntry.created_at.desc(), PaymentHistoryEntry.id.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def list_for_user(self, user_id: int, page: int = 1, page_size: int = 20):
        query = self.db.query(Transaction).filter(Transaction.user_id == user_id)
        total = query.count()
        items = (
            query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total

    def list_for_course(self, user_id: int, course_id: int, limit: int = 10) -> list[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(Transaction.user_id == user_id, Transaction.course_id == course_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .all()
        )

    def delete_cancelled(self, user_id: int, transaction_ids: list[int]) -> int:
        """Delete the user's cancelled transactions, history rows first."""
        ids = [
            row.id for row in (
                self.db.query(Transaction.id)
                .filter(
                    Transaction.id.in_(transaction_ids),
                    Transaction.user_id == user_id,
                    Transaction.status == TransactionStatus.CANCELLED.value,
                )
                .all()
            )
        ]
        if not ids:
            return 0
        try:
            (
                self.db.query(PaymentHistoryEntry)
                .filter(PaymentHistoryEntry.transaction_id.in_(ids))
                .delete(synchronize_session=False)
            )
            deleted = (
                self.db.query(Transaction)
                .filter(
                    Transaction.id.in_(ids),
                    Transaction.status == TransactionStatus.CANCELLED.value,
                )
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        logger.info("Deleted %s cancelled transactions for user %s", deleted, user_id)
        return deleted
