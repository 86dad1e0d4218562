"""Narrow persistence interfaces used by the purchase flow.

Each repository wraps the request's ``Session``; none of them commit. The
caller owns the transaction.
"""
from marketplace.errors import Conflict
from marketplace.models import (
    Course,
    Enrollment,
    EnrollmentStatus,
    Payment,
    PaymentStatus,
    utcnow,
)


class CourseRepository:
    def __init__(self, db):
        self.db = db

    def get(self, course_id):
        return self.db.get(Course, course_id)

    def adjust_enrollment_count(self, course_id, delta):
        # in-database increment so concurrent commits never lose an update
        self.db.query(Course).filter(Course.id == course_id).update(
            {Course.enrollment_count: Course.enrollment_count + delta},
            synchronize_session=False,
        )


class EnrollmentRepository:
    def __init__(self, db):
        self.db = db

    def find(self, user_id, course_id):
        return (
            self.db.query(Enrollment)
            .filter_by(user_id=user_id, course_id=course_id)
            .first()
        )

    def find_current(self, user_id, course_id):
        """The user's enrollment unless it has been cancelled."""
        enrollment = self.find(user_id, course_id)
        if enrollment is not None and enrollment.status == EnrollmentStatus.CANCELLED:
            return None
        return enrollment

    def activate(self, user_id, course_id, now=None):
        """Insert an active enrollment, or reactivate a cancelled one.

        A concurrent insert for the same pair surfaces as ``IntegrityError``
        on flush.
        """
        now = now or utcnow()
        existing = self.find(user_id, course_id)
        if existing is None:
            enrollment = Enrollment(
                user_id=user_id,
                course_id=course_id,
                status=EnrollmentStatus.ACTIVE,
                enrolled_at=now,
            )
            self.db.add(enrollment)
            self.db.flush()
            return enrollment

        updated = (
            self.db.query(Enrollment)
            .filter(Enrollment.id == existing.id, Enrollment.status == EnrollmentStatus.CANCELLED)
            .update(
                {
                    Enrollment.status: EnrollmentStatus.ACTIVE,
                    Enrollment.enrolled_at: now,
                    Enrollment.completed_at: None,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            raise Conflict("Already enrolled in this course")
        self.db.expire(existing)
        return existing

    def cancel(self, enrollment):
        updated = (
            self.db.query(Enrollment)
            .filter(Enrollment.id == enrollment.id, Enrollment.status == EnrollmentStatus.ACTIVE)
            .update({Enrollment.status: EnrollmentStatus.CANCELLED}, synchronize_session=False)
        )
        self.db.expire(enrollment)
        return bool(updated)


class PaymentRepository:
    # A declined attempt can still succeed on retry against the same intent.
    COMPLETABLE = (PaymentStatus.PENDING, PaymentStatus.FAILED)

    def __init__(self, db):
        self.db = db

    def get(self, payment_id):
        return self.db.get(Payment, payment_id)

    def add(self, payment):
        self.db.add(payment)
        self.db.flush()
        return payment

    def count_settled(self, user_id, course_id):
        """Attempts for this purchase that are no longer pending."""
        return (
            self.db.query(Payment)
            .filter(Payment.user_id == user_id, Payment.course_id == course_id,
                    Payment.status != PaymentStatus.PENDING)
            .count()
        )

    def _transition(self, payment_id, from_statuses, values):
        updated = (
            self.db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status.in_(from_statuses))
            .update(values, synchronize_session=False)
        )
        payment = self.db.get(Payment, payment_id)
        if payment is not None:
            self.db.expire(payment)
        return bool(updated)

    def mark_completed(self, payment_id, now=None):
        """Pending or Failed -> Completed. False if it was already completed or refunded."""
        return self._transition(payment_id, self.COMPLETABLE, {
            Payment.status: PaymentStatus.COMPLETED,
            Payment.completed_at: now or utcnow(),
            Payment.failure_reason: None,
        })

    def mark_failed(self, payment_id, reason):
        return self._transition(payment_id, (PaymentStatus.PENDING,), {
            Payment.status: PaymentStatus.FAILED,
            Payment.failure_reason: reason[:500],
        })
