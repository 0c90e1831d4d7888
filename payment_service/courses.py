from sqlalchemy.orm import Session

from payment_service.models import Course, Enrollment, EnrollmentStatus, utcnow

# Enrollments that already grant access to the course.
ACCESS_STATUSES = (EnrollmentStatus.ACTIVE.value, EnrollmentStatus.COMPLETED.value)


class CourseRepository:
    """Course and enrollment rows owned by the wider platform."""

    def __init__(self, db: Session):
        self.db = db

    def find_course_by_id(self, course_id: int, purchasable_only: bool = True) -> Course | None:
        query = self.db.query(Course).filter(Course.id == course_id)
        if purchasable_only:
            query = query.filter(Course.is_published.is_(True), Course.status == "published")
        return query.first()

    def find_enrollment(self, user_id: int, course_id: int) -> Enrollment | None:
        return (
            self.db.query(Enrollment)
            .filter(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
            .first()
        )

    def find_active_enrollment(self, user_id: int, course_id: int) -> Enrollment | None:
        return (
            self.db.query(Enrollment)
            .filter(
                Enrollment.user_id == user_id,
                Enrollment.course_id == course_id,
                Enrollment.status.in_(ACCESS_STATUSES),
            )
            .first()
        )

    def create_enrollment(self, user_id: int, course_id: int) -> Enrollment:
        """Stage a new active enrollment; the caller commits."""
        enrollment = Enrollment(
            user_id=user_id,
            course_id=course_id,
            status=EnrollmentStatus.ACTIVE.value,
            progress=0,
            enrolled_at=utcnow(),
        )
        self.db.add(enrollment)
        return enrollment

    def increment_enrollment_count(self, course_id: int) -> None:
        (
            self.db.query(Course)
            .filter(Course.id == course_id)
            .update(
                {Course.enrolled_count: Course.enrolled_count + 1},
                synchronize_session=False,
            )
        )
