from datetime import datetime
from decimal import Decimal
from typing import ClassVar, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from marketplace.models import (
    CourseStatus,
    EnrollmentStatus,
    LessonType,
    PaymentStatus,
    UserRole,
)


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PartialUpdate(BaseModel):
    """PATCH body. Omitted fields are left alone; fields listed in
    ``non_nullable`` back NOT NULL columns and may not be sent as null."""

    non_nullable: ClassVar[tuple] = ()

    @model_validator(mode="before")
    @classmethod
    def reject_nulls(cls, data):
        if isinstance(data, dict):
            nulls = [name for name in cls.non_nullable if name in data and data[name] is None]
            if nulls:
                raise ValueError(f"{', '.join(nulls)} may not be null")
        return data


# users

class UserOut(ORMModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: UserRole
    is_active: bool
    created_at: Optional[datetime] = None


class ProfileUpdate(PartialUpdate):
    non_nullable: ClassVar[tuple] = ("first_name", "last_name")

    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)


class AdminUserUpdate(PartialUpdate):
    non_nullable: ClassVar[tuple] = ("first_name", "last_name", "role", "is_active")

    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None


class UserPage(BaseModel):
    users: List[UserOut]
    pagination: Pagination


class InstructorSummary(ORMModel):
    id: str
    first_name: str
    last_name: str


# categories

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = Field(None, min_length=1, max_length=120, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    description: Optional[str] = None


class CategoryUpdate(PartialUpdate):
    non_nullable: ClassVar[tuple] = ("name", "slug", "is_active")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = Field(None, min_length=1, max_length=120, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    description: Optional[str] = None
    is_active: Optional[bool] = None


class CategorySummary(ORMModel):
    id: str
    name: str
    slug: str


class CategoryOut(ORMModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None


class CategoryWithCount(CategoryOut):
    # published courses only
    course_count: int


# courses

class CourseCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    category_id: Optional[str] = None
    level: Optional[str] = None
    price: Decimal = Field(..., ge=0, decimal_places=2)
    discount_price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)

    @model_validator(mode="after")
    def discount_not_above_price(self):
        if self.discount_price is not None and self.discount_price > self.price:
            raise ValueError("discount_price must not exceed price")
        return self


class CourseUpdate(PartialUpdate):
    non_nullable: ClassVar[tuple] = ("title", "description", "price", "status")

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, min_length=1)
    category_id: Optional[str] = None
    level: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    discount_price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    status: Optional[CourseStatus] = None


class CourseStatusUpdate(BaseModel):
    status: CourseStatus


class CourseSummary(ORMModel):
    id: str
    title: str
    slug: str
    instructor: InstructorSummary


class CourseOut(ORMModel):
    id: str
    title: str
    slug: str
    description: str
    category_id: Optional[str] = None
    category: Optional[CategorySummary] = None
    level: Optional[str] = None
    price: Decimal
    discount_price: Optional[Decimal] = None
    status: CourseStatus
    instructor_id: str
    instructor: InstructorSummary
    enrollment_count: int
    average_rating: Decimal
    review_count: int
    created_at: Optional[datetime] = None


class CoursePage(BaseModel):
    courses: List[CourseOut]
    pagination: Pagination


class CategoryDetail(BaseModel):
    category: CategoryWithCount
    courses: List[CourseOut]
    pagination: Pagination


# modules

class ModuleCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class ModuleUpdate(PartialUpdate):
    non_nullable: ClassVar[tuple] = ("title",)

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None


class ModuleOut(ORMModel):
    id: str
    course_id: str
    title: str
    description: Optional[str] = None
    order: int


# lessons

class LessonCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    module_id: Optional[str] = None
    description: Optional[str] = None
    type: LessonType = LessonType.VIDEO
    content: Optional[str] = None
    video_url: Optional[str] = None
    video_duration: Optional[int] = Field(None, ge=0)
    is_free: bool = False


class LessonUpdate(PartialUpdate):
    non_nullable: ClassVar[tuple] = ("title", "module_id", "type", "is_free")

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    module_id: Optional[str] = None
    description: Optional[str] = None
    type: Optional[LessonType] = None
    content: Optional[str] = None
    video_url: Optional[str] = None
    video_duration: Optional[int] = Field(None, ge=0)
    is_free: Optional[bool] = None


class LessonReorder(BaseModel):
    lesson_ids: List[str] = Field(..., min_length=1)


class LessonOut(ORMModel):
    id: str
    course_id: str
    module_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    type: LessonType
    video_duration: Optional[int] = None
    order: int
    is_free: bool
    # withheld from users without access
    content: Optional[str] = None
    video_url: Optional[str] = None


class CourseDetail(CourseOut):
    modules: List[ModuleOut] = []
    lessons: List[LessonOut]
    is_enrolled: bool = False


# enrollments

class EnrollmentOut(ORMModel):
    id: str
    user_id: str
    course_id: str
    status: EnrollmentStatus
    enrolled_at: datetime
    completed_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    course: CourseSummary


class ProgressStats(BaseModel):
    total_lessons: int
    completed_lessons: int
    progress_percentage: int


class EnrollmentDetail(EnrollmentOut):
    progress_stats: ProgressStats


class ProgressUpdate(BaseModel):
    is_completed: Optional[bool] = None
    watched_duration: Optional[int] = Field(None, ge=0)


class LessonProgressOut(ORMModel):
    id: str
    enrollment_id: str
    lesson_id: str
    is_completed: bool
    watched_duration: int


class LessonAnalytics(BaseModel):
    lesson_id: str
    title: str
    position: int
    completions: int
    completion_rate: float


class CourseAnalytics(BaseModel):
    total_enrollments: int
    active_enrollments: int
    completed_enrollments: int
    completion_rate: int
    lessons: List[LessonAnalytics]


# payments

class PurchaseIntentRequest(BaseModel):
    course_id: str = Field(..., min_length=1)


class PurchaseCourse(BaseModel):
    id: str
    title: str
    instructor: str


class PurchaseIntentOut(BaseModel):
    intent_id: str
    client_secret: str
    amount: Decimal
    currency: str
    course: PurchaseCourse


class ConfirmPurchaseRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)
    course_id: str = Field(..., min_length=1)


class PaymentOut(ORMModel):
    id: str
    user_id: str
    course_id: str
    amount: Decimal
    platform_fee: Decimal
    instructor_amount: Decimal
    currency: str
    status: PaymentStatus
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PurchaseOut(BaseModel):
    payment: PaymentOut
    enrollment: EnrollmentOut


class PaymentPage(BaseModel):
    payments: List[PaymentOut]
    pagination: Pagination


class Earnings(BaseModel):
    total_earnings: Decimal
    total_sales: int
    recent_payments: List[PaymentOut]


# reviews

class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewUpdate(PartialUpdate):
    non_nullable: ClassVar[tuple] = ("rating",)

    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewerSummary(ORMModel):
    id: str
    first_name: str
    last_name: str


class ReviewOut(ORMModel):
    id: str
    course_id: str
    rating: int
    comment: Optional[str] = None
    created_at: Optional[datetime] = None
    user: ReviewerSummary


class MyReviewOut(ORMModel):
    id: str
    course_id: str
    rating: int
    comment: Optional[str] = None
    created_at: Optional[datetime] = None
    course: CourseSummary


class ReviewPage(BaseModel):
    reviews: List[MyReviewOut]
    pagination: Pagination


# admin

class AdminStats(BaseModel):
    total_users: int
    total_instructors: int
    total_courses: int
    published_courses: int
    total_enrollments: int
    total_revenue: Decimal


class RevenueTotals(BaseModel):
    revenue: Decimal
    transactions: int
    average_transaction: Decimal


class TopCourse(BaseModel):
    course_id: str
    title: str
    revenue: Decimal
    sales: int


class PaymentAnalytics(BaseModel):
    total: RevenueTotals
    timeframe: RevenueTotals
    days: int
    top_courses: List[TopCourse]
    recent_payments: List[PaymentOut]
