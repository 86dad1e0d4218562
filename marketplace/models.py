import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from marketplace.database import Base


def _uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    STUDENT = "STUDENT"
    INSTRUCTOR = "INSTRUCTOR"
    ADMIN = "ADMIN"


class CourseStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class LessonType(str, enum.Enum):
    VIDEO = "VIDEO"
    TEXT = "TEXT"
    QUIZ = "QUIZ"
    DOWNLOADABLE = "DOWNLOADABLE"


class EnrollmentStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)      # token subject
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    role = Column(Enum(UserRole), nullable=False, default=UserRole.STUDENT)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    courses = relationship("Course", back_populates="instructor")

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()


class Category(Base):
    __tablename__ = "categories"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), unique=True, nullable=False)
    slug = Column(String(120), unique=True, index=True, nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    courses = relationship("Course", back_populates="category")


class Course(Base):
    __tablename__ = "courses"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, index=True, nullable=False)
    description = Column(Text, nullable=False, default="")
    category_id = Column(String(36), ForeignKey("categories.id"), index=True)
    level = Column(String(50))
    price = Column(Numeric(10, 2), nullable=False, default=0)
    discount_price = Column(Numeric(10, 2))
    status = Column(Enum(CourseStatus), nullable=False, default=CourseStatus.DRAFT, index=True)
    instructor_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    # Written only by the enrollment commit and cancellation transactions.
    enrollment_count = Column(Integer, nullable=False, default=0)
    average_rating = Column(Numeric(3, 2), nullable=False, default=0)
    review_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    instructor = relationship("User", back_populates="courses")
    category = relationship("Category", back_populates="courses")
    modules = relationship("Module", back_populates="course", order_by="Module.order",
                           cascade="all, delete-orphan")
    lessons = relationship("Lesson", back_populates="course", order_by="Lesson.order",
                           cascade="all, delete-orphan")


class Module(Base):
    __tablename__ = "modules"

    id = Column(String(36), primary_key=True, default=_uuid)
    course_id = Column(String(36), ForeignKey("courses.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    order = Column(Integer, nullable=False, default=0)

    course = relationship("Course", back_populates="modules")
    lessons = relationship("Lesson", back_populates="module", order_by="Lesson.order")


class Lesson(Base):
    __tablename__ = "lessons"

    id = Column(String(36), primary_key=True, default=_uuid)
    course_id = Column(String(36), ForeignKey("courses.id"), nullable=False, index=True)
    module_id = Column(String(36), ForeignKey("modules.id"), index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    type = Column(Enum(LessonType), nullable=False, default=LessonType.VIDEO)
    content = Column(Text)
    video_url = Column(String(500))
    video_duration = Column(Integer)
    order = Column(Integer, nullable=False, default=0)
    is_free = Column(Boolean, nullable=False, default=False)

    course = relationship("Course", back_populates="lessons")
    module = relationship("Module", back_populates="lessons")


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollments_user_course"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String(36), ForeignKey("courses.id"), nullable=False, index=True)
    status = Column(Enum(EnrollmentStatus), nullable=False, default=EnrollmentStatus.ACTIVE)
    enrolled_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True))
    last_accessed_at = Column(DateTime(timezone=True))

    user = relationship("User")
    course = relationship("Course")
    lesson_progress = relationship("LessonProgress", back_populates="enrollment")


class LessonProgress(Base):
    __tablename__ = "lesson_progress"
    __table_args__ = (
        UniqueConstraint("enrollment_id", "lesson_id", name="uq_progress_enrollment_lesson"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    enrollment_id = Column(String(36), ForeignKey("enrollments.id"), nullable=False, index=True)
    lesson_id = Column(String(36), ForeignKey("lessons.id"), nullable=False, index=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    watched_duration = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    enrollment = relationship("Enrollment", back_populates="lesson_progress")
    lesson = relationship("Lesson")


class Review(Base):
    __tablename__ = "reviews"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_reviews_user_course"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String(36), ForeignKey("courses.id"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    comment = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User")
    course = relationship("Course")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(255), primary_key=True)          # Stripe PaymentIntent ID
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String(36), ForeignKey("courses.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    platform_fee = Column(Numeric(10, 2), nullable=False)
    instructor_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=False)
    failure_reason = Column(String(500))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True))

    user = relationship("User")
    course = relationship("Course")
