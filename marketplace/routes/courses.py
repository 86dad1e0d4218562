import logging
import re
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import func
from sqlalchemy.orm import Session

from marketplace import schemas
from marketplace.auth import get_optional_user, require_role
from marketplace.database import get_db
from marketplace.errors import Forbidden, InvalidState, NotFound, ValidationError
from marketplace.filters import (
    CourseFilter,
    CourseSort,
    PageRequest,
    SortOrder,
    course_filter,
    order_courses,
    page_request,
)
from marketplace.models import (
    Category,
    Course,
    CourseStatus,
    Enrollment,
    Lesson,
    LessonProgress,
    Module,
    Payment,
    User,
    UserRole,
)
from marketplace.repositories import EnrollmentRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/courses", tags=["courses"])

instructor_only = require_role(UserRole.INSTRUCTOR, UserRole.ADMIN)

DEFAULT_MODULE_TITLE = "Default Module"


def slugify(title):
    slug = title.lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-") or "course"


def _unique_slug(db, title):
    base = slugify(title)
    slug = base
    counter = 1
    while db.query(Course.id).filter_by(slug=slug).first() is not None:
        slug = f"{base}-{counter}"
        counter += 1
    return slug


def _check_category(db, category_id):
    if category_id is None:
        return
    category = db.get(Category, category_id)
    if category is None or not category.is_active:
        raise ValidationError("Unknown or inactive category")


def get_course_or_404(db, course_id):
    course = db.get(Course, course_id)
    if course is None:
        raise NotFound("Course not found")
    return course


def get_owned_course(db, course_id, user):
    course = get_course_or_404(db, course_id)
    if course.instructor_id != user.id and user.role != UserRole.ADMIN:
        raise Forbidden("You can only manage your own courses")
    return course


def has_access(db, course, user):
    """Owners, admins and enrolled students see every lesson."""
    if user is None:
        return False
    if course.instructor_id == user.id or user.role == UserRole.ADMIN:
        return True
    return EnrollmentRepository(db).find_current(user.id, course.id) is not None


def get_module(db, course, module_id):
    module = db.query(Module).filter_by(id=module_id, course_id=course.id).first()
    if module is None:
        raise NotFound("Module not found in this course")
    return module


def default_module(db, course):
    """The module lessons land in when none is named, created on first use."""
    module = db.query(Module).filter_by(course_id=course.id, title=DEFAULT_MODULE_TITLE).first()
    if module is None:
        module = Module(course_id=course.id, title=DEFAULT_MODULE_TITLE,
                        description="Default module for course lessons", order=0)
        db.add(module)
        db.flush()
    return module


def _lesson_view(lesson, full_access):
    view = schemas.LessonOut.model_validate(lesson)
    if not (full_access or lesson.is_free):
        view.content = None
        view.video_url = None
    return view


@router.get("", response_model=schemas.CoursePage)
def list_courses(
    filters: CourseFilter = Depends(course_filter),
    paging: PageRequest = Depends(page_request),
    sort_by: CourseSort = Query(CourseSort.CREATED_AT),
    sort_order: SortOrder = Query(SortOrder.DESC),
    db: Session = Depends(get_db),
):
    query = filters.apply(db.query(Course))
    total = query.count()
    courses = (
        order_courses(query, sort_by, sort_order)
        .offset(paging.offset)
        .limit(paging.limit)
        .all()
    )
    return {"courses": courses, "pagination": paging.pagination(total)}


@router.get("/instructor", response_model=schemas.CoursePage)
def my_courses(
    status: Optional[CourseStatus] = Query(None),
    paging: PageRequest = Depends(page_request),
    user: User = Depends(instructor_only),
    db: Session = Depends(get_db),
):
    """The caller's own courses in every status unless one is asked for."""
    query = CourseFilter(status=status, instructor_id=user.id).apply(db.query(Course))
    total = query.count()
    courses = order_courses(query).offset(paging.offset).limit(paging.limit).all()
    return {"courses": courses, "pagination": paging.pagination(total)}


@router.get("/{course_id}", response_model=schemas.CourseDetail)
def get_course(course_id: str, user: User = Depends(get_optional_user), db: Session = Depends(get_db)):
    course = get_course_or_404(db, course_id)
    full_access = has_access(db, course, user)
    is_owner = user is not None and (course.instructor_id == user.id or user.role == UserRole.ADMIN)
    if course.status != CourseStatus.PUBLISHED and not is_owner:
        raise NotFound("Course not found")

    detail = schemas.CourseDetail.model_validate({
        **schemas.CourseOut.model_validate(course).model_dump(),
        "modules": [schemas.ModuleOut.model_validate(module) for module in course.modules],
        "lessons": [_lesson_view(lesson, full_access) for lesson in course.lessons],
        "is_enrolled": user is not None and not is_owner and full_access,
    })
    return detail


@router.post("", response_model=schemas.CourseOut, status_code=201)
def create_course(
    course_in: schemas.CourseCreate,
    user: User = Depends(instructor_only),
    db: Session = Depends(get_db),
):
    _check_category(db, course_in.category_id)
    course = Course(
        **course_in.model_dump(),
        slug=_unique_slug(db, course_in.title),
        instructor_id=user.id,
        status=CourseStatus.DRAFT,
    )
    db.add(course)
    db.commit()
    db.refresh(course)
    logger.info("Instructor %s created course %s (%s)", user.id, course.id, course.slug)
    return course


@router.patch("/{course_id}", response_model=schemas.CourseOut)
def update_course(
    course_id: str,
    course_in: schemas.CourseUpdate,
    user: User = Depends(instructor_only),
    db: Session = Depends(get_db),
):
    course = get_owned_course(db, course_id, user)
    changes = course_in.model_dump(exclude_unset=True)

    price = changes.get("price", course.price)
    discount = changes.get("discount_price", course.discount_price)
    if discount is not None and discount > price:
        raise ValidationError("discount_price must not exceed price")
    if "category_id" in changes:
        _check_category(db, changes["category_id"])

    for field, value in changes.items():
        setattr(course, field, value)
    db.commit()
    db.refresh(course)
    return course


@router.delete("/{course_id}", status_code=204)
def delete_course(course_id: str, user: User = Depends(instructor_only), db: Session = Depends(get_db)):
    course = get_owned_course(db, course_id, user)
    enrollments = db.query(func.count(Enrollment.id)).filter_by(course_id=course.id).scalar()
    payments = db.query(func.count(Payment.id)).filter_by(course_id=course.id).scalar()
    if enrollments or payments:
        raise InvalidState("Cannot delete a course that has enrollments or payments")
    db.delete(course)
    db.commit()
    logger.info("Course %s deleted by %s", course_id, user.id)
    return Response(status_code=204)


@router.get("/{course_id}/lessons", response_model=List[schemas.LessonOut])
def list_lessons(course_id: str, user: User = Depends(get_optional_user), db: Session = Depends(get_db)):
    course = get_course_or_404(db, course_id)
    full_access = has_access(db, course, user)
    if course.status != CourseStatus.PUBLISHED and not full_access:
        raise NotFound("Course not found")
    return [_lesson_view(lesson, full_access) for lesson in course.lessons]


@router.post("/{course_id}/lessons", response_model=schemas.LessonOut, status_code=201)
def create_lesson(
    course_id: str,
    lesson_in: schemas.LessonCreate,
    user: User = Depends(instructor_only),
    db: Session = Depends(get_db),
):
    course = get_owned_course(db, course_id, user)
    fields = lesson_in.model_dump()
    module_id = fields.pop("module_id")
    module = get_module(db, course, module_id) if module_id else default_module(db, course)

    last = db.query(func.max(Lesson.order)).filter_by(course_id=course.id).scalar()
    lesson = Lesson(**fields, course_id=course.id, module_id=module.id,
                    order=0 if last is None else last + 1)
    db.add(lesson)
    db.commit()
    db.refresh(lesson)
    return lesson


@router.put("/{course_id}/lessons/reorder", response_model=List[schemas.LessonOut])
def reorder_lessons(
    course_id: str,
    reorder_in: schemas.LessonReorder,
    user: User = Depends(instructor_only),
    db: Session = Depends(get_db),
):
    course = get_owned_course(db, course_id, user)
    lessons = {lesson.id: lesson for lesson in course.lessons}
    if len(reorder_in.lesson_ids) != len(lessons) or set(reorder_in.lesson_ids) != set(lessons):
        raise ValidationError("lesson_ids must list every lesson of the course exactly once")

    for position, lesson_id in enumerate(reorder_in.lesson_ids):
        lessons[lesson_id].order = position
    db.commit()
    logger.info("Lessons of course %s reordered by %s", course.id, user.id)
    return sorted(lessons.values(), key=lambda lesson: lesson.order)


def _get_lesson(db, course, lesson_id):
    lesson = db.query(Lesson).filter_by(id=lesson_id, course_id=course.id).first()
    if lesson is None:
        raise NotFound("Lesson not found in this course")
    return lesson


@router.patch("/{course_id}/lessons/{lesson_id}", response_model=schemas.LessonOut)
def update_lesson(
    course_id: str,
    lesson_id: str,
    lesson_in: schemas.LessonUpdate,
    user: User = Depends(instructor_only),
    db: Session = Depends(get_db),
):
    course = get_owned_course(db, course_id, user)
    lesson = _get_lesson(db, course, lesson_id)
    changes = lesson_in.model_dump(exclude_unset=True)
    if "module_id" in changes:
        get_module(db, course, changes["module_id"])

    for field, value in changes.items():
        setattr(lesson, field, value)
    db.commit()
    db.refresh(lesson)
    return lesson


@router.delete("/{course_id}/lessons/{lesson_id}", status_code=204)
def delete_lesson(
    course_id: str,
    lesson_id: str,
    user: User = Depends(instructor_only),
    db: Session = Depends(get_db),
):
    lesson = _get_lesson(db, get_owned_course(db, course_id, user), lesson_id)
    db.query(LessonProgress).filter_by(lesson_id=lesson.id).delete(synchronize_session=False)
    db.delete(lesson)
    db.commit()
    return Response(status_code=204)
