import logging

from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from payment_service.auth import RequestContext
from payment_service.config import Settings
from payment_service.courses import CourseRepository
from payment_service.errors import (
    ConfigurationError, CourseNotFound, FreeCourseRequired, GatewayError, NotDeletable,
    PaymentGatewayUnavailable, TransactionNotFound, failure_notes,
)
from payment_service.gateways.base import SessionContext, SessionResult
from payment_service.gateways.registry import GatewayRegistry
from payment_service.models import PaymentMethod, Transaction, TransactionStatus
from payment_service.reconciler import EnrollmentReconciler
from payment_service.store import TransactionStore
from payment_service.sweeper import StalenessSweeper

logger = logging.getLogger(__name__)

PENDING = TransactionStatus.PENDING


class PaymentService:
    """Request-facing payment operations for an authenticated user."""

    def __init__(self, db: Session, registry: GatewayRegistry, settings: Settings):
        self.db = db
        self.registry = registry
        self.settings = settings
        self.store = TransactionStore(db)
        self.courses = CourseRepository(db)
        self.reconciler = EnrollmentReconciler(db)

    def _owned(self, user_id: int, transaction_id: int) -> Transaction:
        transaction = self.store.get_for_user(transaction_id, user_id)
        if transaction is None:
            raise TransactionNotFound()
        return transaction

    def create_session(self, user_id: int, method, course_id: int,
                       bank_code: str | None = None,
                       context: RequestContext | None = None):
        adapter = self.registry.get(method)
        course = self.courses.find_course_by_id(course_id)
        if course is None:
            raise CourseNotFound()
        amount = course.effective_price
        if amount is None or amount <= 0:
            raise FreeCourseRequired()
        try:
            adapter.ensure_configured()
        except ConfigurationError:
            logger.error("Refusing %s payment: gateway is not configured", adapter.method.value)
            raise

        transaction = self.store.create(
            user_id, course_id, amount,
            course.currency or self.settings.DEFAULT_CURRENCY,
            adapter.method,
        )
        self.store.record_history(
            transaction.id, "initiated", f"{adapter.method.value} payment initiated", context
        )

        try:
            result = adapter.create_session(
                transaction, SessionContext(request=context or RequestContext(), bank_code=bank_code)
            )
        except (GatewayError, ConfigurationError, RedisError) as exc:
            logger.error(
                "Could not open %s session for %s: %s",
                adapter.method.value, transaction.code, failure_notes(exc),
            )
            self.store.transition(
                transaction.id, PENDING, TransactionStatus.FAILED,
                details={"error": str(exc)}, notes=failure_notes(exc),
            )
            self.store.record_history(
                transaction.id, TransactionStatus.FAILED.value,
                "Failed to create payment session", context,
            )
            if isinstance(exc, ConfigurationError):
                raise
            raise PaymentGatewayUnavailable() from exc

        if result.details:
            self.store.update_details(transaction.id, result.details)
        return self.store.get(transaction.id), result

    def enroll_free(self, user_id: int, course_id: int, context: RequestContext | None = None):
        return self.reconciler.enroll_free(user_id, course_id, context)

    def cancel(self, user_id: int, transaction_id: int,
               context: RequestContext | None = None) -> Transaction:
        transaction = self._owned(user_id, transaction_id)
        note = "Payment cancelled by user"
        if self.store.transition(transaction.id, PENDING, TransactionStatus.CANCELLED, notes=note):
            self.store.record_history(transaction.id, TransactionStatus.CANCELLED.value, note, context)
        return self.store.get(transaction.id)

    def confirm(self, user_id: int, transaction_id: int):
        """Client fallback after a payment: make sure a completed payment is enrolled."""
        transaction = self._owned(user_id, transaction_id)
        if transaction.status != TransactionStatus.COMPLETED.value:
            return transaction, None
        return transaction, self.reconciler.reconcile(transaction)

    def approval_url(self, user_id: int, transaction_id: int,
                     context: RequestContext | None = None) -> tuple[Transaction, SessionResult]:
        transaction = self._owned(user_id, transaction_id)
        if (transaction.method != PaymentMethod.OAUTH_CAPTURE.value
                or transaction.status != PENDING.value):
            raise TransactionNotFound("Pending wallet transaction not found")
        adapter = self.registry.get(PaymentMethod.OAUTH_CAPTURE)
        try:
            result = adapter.approval_url(transaction, SessionContext(request=context or RequestContext()))
        except (GatewayError, RedisError) as exc:
            logger.error("Could not resume %s: %s", transaction.code, failure_notes(exc))
            raise PaymentGatewayUnavailable() from exc
        if result.details:
            self.store.update_details(transaction.id, result.details)
        return transaction, result

    def detail(self, user_id: int, transaction_id: int):
        transaction = self._owned(user_id, transaction_id)
        course = self.courses.find_course_by_id(transaction.course_id, purchasable_only=False)
        enrollment = self.courses.find_enrollment(transaction.user_id, transaction.course_id)
        return transaction, course, enrollment, self.store.history(transaction.id, limit=5)

    def history(self, user_id: int, page: int = 1, page_size: int = 20):
        StalenessSweeper(self.db, self.settings.PENDING_TIMEOUT_MINUTES).sweep(user_id=user_id)
        return self.store.list_for_user(user_id, page, page_size)

    def course_history(self, user_id: int, course_id: int) -> list[Transaction]:
        return self.store.list_for_course(user_id, course_id, limit=10)

    def delete(self, user_id: int, transaction_id: int) -> None:
        transaction = self._owned(user_id, transaction_id)
        if transaction.status != TransactionStatus.CANCELLED.value:
            raise NotDeletable()
        self.store.delete_cancelled(user_id, [transaction_id])

    def delete_many(self, user_id: int, transaction_ids: list[int]) -> int:
        deleted = self.store.delete_cancelled(user_id, transaction_ids)
        if not deleted:
            raise TransactionNotFound("No cancelled transactions found to delete")
        return deleted

    def bank_list(self) -> list[dict]:
        adapter = self.registry.get(PaymentMethod.REDIRECT_SIGNED)
        try:
            return adapter.bank_list()
        except (GatewayError, RedisError, ValueError) as exc:
            logger.error("Could not fetch bank list: %s", failure_notes(exc))
            raise PaymentGatewayUnavailable("Could not fetch bank list") from exc
