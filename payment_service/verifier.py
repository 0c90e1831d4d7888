import logging
from dataclasses import dataclass
from decimal import Decimal

from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from payment_service.auth import RequestContext
from payment_service.errors import ConfigurationError, GatewayError, failure_notes
from payment_service.gateways.registry import GatewayRegistry
from payment_service.models import Transaction, TransactionStatus
from payment_service.reconciler import EnrollmentReconciler
from payment_service.store import TransactionStore

logger = logging.getLogger(__name__)

PENDING = TransactionStatus.PENDING


@dataclass
class CallbackResult:
    status: str
    transaction_id: int | None = None
    transaction_code: str | None = None
    course_id: int | None = None
    already_handled: bool = False
    reason: str | None = None
    enrollment_id: int | None = None


class CallbackVerifier:
    """Single entry point for every inbound payment notification.

    Whatever happens, the caller gets a CallbackResult: gateways expect a
    well-formed acknowledgment even when the notification is rejected.
    """

    def __init__(self, db: Session, registry: GatewayRegistry):
        self.store = TransactionStore(db)
        self.registry = registry
        self.reconciler = EnrollmentReconciler(db)

    def handle(self, method, payload: dict, context: RequestContext | None = None,
               user_id: int | None = None) -> CallbackResult:
        """Verify one notification. ``user_id`` restricts it to that user's transactions."""
        adapter = self.registry.get(method)
        try:
            code = adapter.claimed_code(payload)
        except (GatewayError, RedisError) as exc:
            logger.error("Could not correlate %s callback: %s", adapter.method.value, exc)
            return CallbackResult(status="rejected", reason="Transaction not found")

        transaction = self.store.find_by_code(code) if code else None
        if transaction is None or (user_id is not None and transaction.user_id != user_id):
            logger.warning("%s callback for unknown transaction %r", adapter.method.value, code)
            return CallbackResult(status="rejected", transaction_code=code,
                                  reason="Transaction not found")
        if transaction.method != adapter.method.value:
            logger.warning(
                "Callback for %s arrived on %s endpoint", transaction.code, adapter.method.value
            )
            return self._reject(transaction, "Payment method mismatch", context)
        if transaction.is_terminal:
            return self._already_handled(transaction, context)

        try:
            outcome = adapter.verify_inbound(payload, transaction)
        except GatewayError as exc:
            logger.error(
                "Gateway error verifying %s: %s %s", transaction.code, exc, exc.payload
            )
            return self._fail(transaction, f"Gateway verification error: {failure_notes(exc)}",
                              context)
        except (ConfigurationError, RedisError) as exc:
            logger.error("Could not verify %s: %s", transaction.code, exc)
            return self._reject(transaction, "Verification unavailable", context)

        if not outcome.success:
            if outcome.terminal:
                return self._fail(transaction, outcome.rejection_reason, context, outcome.details)
            return self._reject(transaction, outcome.rejection_reason, context)

        if outcome.transaction_code != transaction.code:
            logger.warning(
                "Verified callback names %r, expected %s", outcome.transaction_code, transaction.code
            )
            return self._reject(transaction, "Transaction reference mismatch", context)

        if not self._amount_matches(transaction, outcome.gateway_amount):
            logger.warning(
                "Amount mismatch for %s: gateway %s, expected %s (status %s)",
                transaction.code, outcome.gateway_amount, transaction.amount,
                outcome.gateway_status,
            )
            self.store.record_history(
                transaction.id, "amount_mismatch",
                f"Gateway reported {outcome.gateway_amount}, expected {transaction.amount}",
                context,
            )
            return self._result(transaction, status="rejected", reason="Amount mismatch")

        details = {**outcome.details, "gateway_status": outcome.gateway_status}
        if self.store.transition(
            transaction.id, PENDING, TransactionStatus.COMPLETED,
            details=details, notes="Payment verified by gateway callback",
        ):
            self.store.record_history(
                transaction.id, TransactionStatus.COMPLETED.value,
                "Payment completed successfully", context,
            )
            enrollment = self.reconciler.reconcile(self.store.get(transaction.id))
            return self._result(transaction, enrollment_id=enrollment.id)

        return self._already_handled(transaction, context)

    @staticmethod
    def _amount_matches(transaction: Transaction, gateway_amount) -> bool:
        if gateway_amount is None:
            return False
        return Decimal(str(gateway_amount)) == Decimal(str(transaction.amount))

    def _result(self, transaction: Transaction, **kwargs) -> CallbackResult:
        current = self.store.get(transaction.id)
        kwargs.setdefault("status", current.status)
        return CallbackResult(
            transaction_id=current.id,
            transaction_code=current.code,
            course_id=current.course_id,
            **kwargs,
        )

    def _reject(self, transaction: Transaction, reason: str, context) -> CallbackResult:
        self.store.record_history(transaction.id, "rejected", reason, context)
        return self._result(transaction, status="rejected", reason=reason)

    def _fail(self, transaction: Transaction, reason: str, context,
              details: dict | None = None) -> CallbackResult:
        if self.store.transition(
            transaction.id, PENDING, TransactionStatus.FAILED, details=details, notes=reason
        ):
            self.store.record_history(transaction.id, TransactionStatus.FAILED.value, reason, context)
            return self._result(transaction, reason=reason)
        return self._already_handled(transaction, context)

    def _already_handled(self, transaction: Transaction, context) -> CallbackResult:
        current = self.store.get(transaction.id)
        self.store.record_history(
            transaction.id, "duplicate", f"Callback ignored, transaction already {current.status}",
            context,
        )
        return self._result(transaction, already_handled=True)
