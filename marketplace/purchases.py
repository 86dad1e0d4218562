"""Purchase-to-enrollment flow.

A paid purchase goes through three steps:

1. ``create_purchase_intent`` prices the course, reserves the charge with
   Stripe and records a PENDING payment keyed by the PaymentIntent id.
2. ``confirm_purchase`` re-checks ownership and asks Stripe for the intent's
   real status; the client's word that it succeeded is never trusted.
3. ``commit_enrollment`` completes the payment, creates the enrollment and
   bumps the course's enrollment counter in one transaction.

A payment marked FAILED by a declined attempt stays completable: the customer
may retry against the same intent and Stripe then reports it as succeeded.

Free courses skip the first two steps (``enroll_free``). Stripe webhooks
reuse the same commit, so a payment can never end up COMPLETED without its
enrollment.
"""
import logging

from sqlalchemy.exc import IntegrityError

from marketplace import stripe_service
from marketplace.config import CURRENCY
from marketplace.errors import (
    Conflict,
    Forbidden,
    InvalidState,
    NotFound,
    PaymentNotCompleted,
    ValidationError,
)
from marketplace.models import CourseStatus, Payment, PaymentStatus, utcnow
from marketplace.pricing import resolve_price, to_minor_units
from marketplace.repositories import CourseRepository, EnrollmentRepository, PaymentRepository

logger = logging.getLogger(__name__)

INTENT_SUCCEEDED = "succeeded"


class PurchaseFlow:

    def __init__(self, db, gateway=stripe_service, currency=CURRENCY):
        self.db = db
        self.gateway = gateway
        self.currency = currency
        self.courses = CourseRepository(db)
        self.enrollments = EnrollmentRepository(db)
        self.payments = PaymentRepository(db)

    def _purchasable_course(self, user, course_id):
        course = self.courses.get(course_id)
        if course is None:
            raise NotFound("Course not found")
        if course.status != CourseStatus.PUBLISHED:
            raise InvalidState("Course is not available for purchase")
        if course.instructor_id == user.id:
            raise Forbidden("You cannot enroll in your own course")
        if self.enrollments.find_current(user.id, course_id) is not None:
            raise Conflict("You are already enrolled in this course")
        return course

    def create_purchase_intent(self, user, course_id):
        course = self._purchasable_course(user, course_id)
        quote = resolve_price(course)
        if quote.is_free:
            raise InvalidState("This course is free, enroll directly instead")

        amount = to_minor_units(quote.charge_amount)
        # Same buyer, course, amount and attempt number -> Stripe hands back the same intent.
        attempt = self.payments.count_settled(user.id, course.id)
        intent = self.gateway.create_payment_intent(
            amount=amount,
            currency=self.currency,
            metadata={
                "course_id": course.id,
                "user_id": user.id,
                "instructor_id": course.instructor_id,
            },
            idempotency_key=f"purchase-{user.id}-{course.id}-{amount}-{attempt}",
            description=f"Course: {course.title}",
        )

        payment = self.payments.get(intent.id)
        if payment is None:
            payment = self._record_pending(user, course, quote, intent.id)
            logger.info("Created payment intent %s user=%s course=%s amount=%s",
                        intent.id, user.id, course.id, quote.charge_amount)
        else:
            logger.info("Repeated intent request for payment %s", intent.id)

        return {
            "intent_id": intent.id,
            "client_secret": intent.client_secret,
            "amount": quote.charge_amount,
            "currency": payment.currency,
            "course": {
                "id": course.id,
                "title": course.title,
                "instructor": course.instructor.full_name,
            },
        }

    def _record_pending(self, user, course, quote, intent_id):
        payment = Payment(
            id=intent_id,
            user_id=user.id,
            course_id=course.id,
            amount=quote.charge_amount,
            platform_fee=quote.platform_fee,
            instructor_amount=quote.instructor_amount,
            currency=self.currency.upper(),
            status=PaymentStatus.PENDING,
            stripe_payment_intent_id=intent_id,
        )
        try:
            self.payments.add(payment)
            self.db.commit()
        except IntegrityError:
            # a concurrent duplicate request recorded the same intent first
            self.db.rollback()
            existing = self.payments.get(intent_id)
            if existing is None:
                raise
            return existing
        except Exception:
            self.db.rollback()
            raise
        return payment

    def verify_confirmation(self, user, payment_intent_id, course_id):
        payment = self.payments.get(payment_intent_id)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.user_id != user.id:
            raise Forbidden("Unauthorized access to payment")
        if payment.course_id != course_id:
            raise ValidationError("Payment does not match course")

        intent = self.gateway.retrieve_payment_intent(payment_intent_id)
        if intent.status != INTENT_SUCCEEDED:
            raise PaymentNotCompleted("Payment not completed")

        if self.enrollments.find_current(user.id, course_id) is not None:
            raise Conflict("Already enrolled in this course")
        return payment

    def confirm_purchase(self, user, payment_intent_id, course_id):
        payment = self.verify_confirmation(user, payment_intent_id, course_id)
        enrollment = self.commit_enrollment(user.id, course_id, payment_id=payment.id)
        logger.info("Confirmed payment %s, user=%s enrolled in course=%s",
                    payment.id, user.id, course_id)
        return {"payment": payment, "enrollment": enrollment}

    def enroll_free(self, user, course_id):
        course = self._purchasable_course(user, course_id)
        if not resolve_price(course).is_free:
            raise InvalidState("Payment required for enrollment")
        enrollment = self.commit_enrollment(user.id, course_id)
        logger.info("User %s enrolled in free course %s", user.id, course_id)
        return enrollment

    def commit_enrollment(self, user_id, course_id, payment_id=None):
        """Complete the payment (if any), enroll the user and count it, atomically.

        A lost race on the (user, course) unique constraint rolls the whole
        transaction back and surfaces as ``Conflict``.
        """
        now = utcnow()
        try:
            if payment_id is not None and not self.payments.mark_completed(payment_id, now=now):
                raise Conflict("Already enrolled in this course")
            enrollment = self.enrollments.activate(user_id, course_id, now=now)
            self.courses.adjust_enrollment_count(course_id, 1)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning("Concurrent enrollment for user=%s course=%s lost the race",
                           user_id, course_id)
            raise Conflict("Already enrolled in this course")
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(enrollment)
        return enrollment

    def cancel_enrollment(self, enrollment):
        """Cancel an active enrollment and release its seat in the counter."""
        try:
            if not self.enrollments.cancel(enrollment):
                raise InvalidState("Only active enrollments can be cancelled")
            self.courses.adjust_enrollment_count(enrollment.course_id, -1)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Enrollment %s cancelled", enrollment.id)

    def handle_payment_succeeded(self, intent):
        payment = self.payments.get(intent["id"])
        if payment is None:
            logger.error("Payment %s not found in database", intent["id"])
            return
        if payment.status not in self.payments.COMPLETABLE:
            logger.info("Payment %s already %s, ignoring webhook", payment.id, payment.status.value)
            return

        if self.enrollments.find_current(payment.user_id, payment.course_id) is not None:
            # enrolled through another purchase; only settle this payment
            try:
                self.payments.mark_completed(payment.id)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            logger.info("Payment %s completed, user already enrolled", payment.id)
            return

        try:
            self.commit_enrollment(payment.user_id, payment.course_id, payment_id=payment.id)
        except Conflict:
            logger.info("Payment %s was settled concurrently", payment.id)
            return
        logger.info("Payment %s completed via webhook, user=%s enrolled in course=%s",
                    payment.id, payment.user_id, payment.course_id)

    def handle_payment_failed(self, intent):
        error = intent.get("last_payment_error") or {}
        reason = error.get("message") or "Payment failed"
        if self.payments.get(intent["id"]) is None:
            logger.error("Payment %s not found in database", intent["id"])
            return
        try:
            failed = self.payments.mark_failed(intent["id"], reason)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        if failed:
            logger.info("Payment %s failed: %s", intent["id"], reason)
        else:
            logger.info("Payment %s is no longer pending, failure ignored", intent["id"])
