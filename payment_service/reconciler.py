import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payment_service.auth import RequestContext
from payment_service.courses import ACCESS_STATUSES, CourseRepository
from payment_service.errors import AlreadyEnrolled, InvalidStateTransition, PaidCourseRequired
from payment_service.models import (
    Enrollment, EnrollmentStatus, PaymentHistoryEntry, PaymentMethod, Transaction,
    TransactionStatus, utcnow,
)
from payment_service.store import generate_code

logger = logging.getLogger(__name__)


class EnrollmentReconciler:
    """Turns a completed transaction into exactly one enrollment.

    The unique (user_id, course_id) constraint decides concurrent attempts:
    the insert that loses is rolled back and the winner's row is returned.
    """

    def __init__(self, db: Session):
        self.db = db
        self.courses = CourseRepository(db)

    def reconcile(self, transaction: Transaction) -> Enrollment:
        if transaction.status != TransactionStatus.COMPLETED.value:
            raise InvalidStateTransition(
                f"Transaction {transaction.id} is {transaction.status}, not completed"
            )
        user_id, course_id = transaction.user_id, transaction.course_id

        existing = self.courses.find_enrollment(user_id, course_id)
        if existing:
            return self._reactivate(existing)

        try:
            enrollment = self.courses.create_enrollment(user_id, course_id)
            self.db.flush()
            self.courses.increment_enrollment_count(course_id)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.courses.find_enrollment(user_id, course_id)
            if existing is None:
                raise
            logger.info(
                "User %s was enrolled in course %s by a concurrent reconciliation",
                user_id, course_id,
            )
            return self._reactivate(existing)

        self.db.refresh(enrollment)
        logger.info(
            "Enrolled user %s in course %s for transaction %s",
            user_id, course_id, transaction.code,
        )
        return enrollment

    def _reactivate(self, enrollment: Enrollment) -> Enrollment:
        if enrollment.status in ACCESS_STATUSES:
            return enrollment
        logger.info(
            "Re-activating %s enrollment %s after payment", enrollment.status, enrollment.id
        )
        enrollment.status = EnrollmentStatus.ACTIVE.value
        self.db.commit()
        self.db.refresh(enrollment)
        return enrollment

    def enroll_free(self, user_id: int, course_id: int,
                    context: RequestContext | None = None):
        """Enroll in a zero-price course, recording a completed zero-cost transaction."""
        course = self.courses.find_course_by_id(course_id)
        if course is None or course.effective_price > 0:
            raise PaidCourseRequired()

        existing = self.courses.find_enrollment(user_id, course_id)
        if existing and existing.status in ACCESS_STATUSES:
            raise AlreadyEnrolled()

        now = utcnow()
        transaction = Transaction(
            code=generate_code(PaymentMethod.ZERO_COST),
            user_id=user_id,
            course_id=course_id,
            amount=0,
            currency=course.currency,
            method=PaymentMethod.ZERO_COST.value,
            status=TransactionStatus.COMPLETED.value,
            created_at=now,
            updated_at=now,
            payment_date=now,
            details={"method": PaymentMethod.ZERO_COST.value,
                     "note": "Automatic enrollment for free course"},
        )
        self.db.add(transaction)
        try:
            if existing:
                existing.status = EnrollmentStatus.ACTIVE.value
                enrollment = existing
            else:
                enrollment = self.courses.create_enrollment(user_id, course_id)
            self.db.flush()
            if not existing:
                self.courses.increment_enrollment_count(course_id)
            self.db.add(PaymentHistoryEntry(
                transaction_id=transaction.id,
                status=TransactionStatus.COMPLETED.value,
                message="Free course enrollment",
                ip_address=context.ip if context else None,
                user_agent=context.user_agent if context else None,
                created_at=now,
            ))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise AlreadyEnrolled()

        self.db.refresh(enrollment)
        self.db.refresh(transaction)
        logger.info("Enrolled user %s in free course %s", user_id, course_id)
        return enrollment, transaction
