import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace import schemas
from marketplace.auth import get_current_user, require_role
from marketplace.database import get_db
from marketplace.errors import Forbidden, InvalidState, NotFound
from marketplace.models import (
    Enrollment,
    EnrollmentStatus,
    Lesson,
    LessonProgress,
    User,
    UserRole,
    utcnow,
)
from marketplace.purchases import PurchaseFlow
from marketplace.repositories import EnrollmentRepository
from marketplace.routes.courses import get_owned_course

logger = logging.getLogger(__name__)

router = APIRouter(tags=["enrollments"])


def progress_stats(db, enrollment):
    total = db.query(func.count(Lesson.id)).filter_by(course_id=enrollment.course_id).scalar()
    completed = (
        db.query(func.count(LessonProgress.id))
        .join(Lesson, Lesson.id == LessonProgress.lesson_id)
        .filter(
            LessonProgress.enrollment_id == enrollment.id,
            LessonProgress.is_completed.is_(True),
            Lesson.course_id == enrollment.course_id,
        )
        .scalar()
    )
    percentage = round(completed / total * 100) if total else 0
    return {"total_lessons": total, "completed_lessons": completed, "progress_percentage": percentage}


def _own_enrollment(db, user, course_id):
    enrollment = EnrollmentRepository(db).find(user.id, course_id)
    if enrollment is None:
        raise NotFound("Enrollment not found")
    return enrollment


def _active_enrollment(db, user, course_id):
    enrollment = EnrollmentRepository(db).find_current(user.id, course_id)
    if enrollment is None:
        raise Forbidden("You are not enrolled in this course")
    return enrollment


@router.post("/courses/{course_id}/enroll", response_model=schemas.EnrollmentOut, status_code=201)
def enroll_free(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return PurchaseFlow(db).enroll_free(user, course_id)


@router.get("/enrollments/{course_id}", response_model=schemas.EnrollmentDetail)
def get_enrollment(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    enrollment = _own_enrollment(db, user, course_id)
    return schemas.EnrollmentDetail.model_validate({
        **schemas.EnrollmentOut.model_validate(enrollment).model_dump(),
        "progress_stats": progress_stats(db, enrollment),
    })


@router.put("/enrollments/{course_id}/lessons/{lesson_id}/progress",
            response_model=schemas.LessonProgressOut)
def update_lesson_progress(
    course_id: str,
    lesson_id: str,
    progress_in: schemas.ProgressUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    enrollment = _active_enrollment(db, user, course_id)
    lesson = db.query(Lesson).filter_by(id=lesson_id, course_id=course_id).first()
    if lesson is None:
        raise NotFound("Lesson not found in this course")

    progress = db.query(LessonProgress).filter_by(enrollment_id=enrollment.id, lesson_id=lesson.id).first()
    if progress is None:
        progress = LessonProgress(enrollment_id=enrollment.id, lesson_id=lesson.id,
                                  is_completed=False, watched_duration=0)
        db.add(progress)
    if progress_in.is_completed is not None:
        progress.is_completed = progress_in.is_completed
    if progress_in.watched_duration is not None:
        progress.watched_duration = progress_in.watched_duration
    enrollment.last_accessed_at = utcnow()

    try:
        db.commit()
    except IntegrityError:
        # two updates raced to create the row; the other one won
        db.rollback()
        progress = db.query(LessonProgress).filter_by(enrollment_id=enrollment.id, lesson_id=lesson.id).one()
    db.refresh(progress)
    return progress


@router.post("/enrollments/{course_id}/complete", response_model=schemas.EnrollmentOut)
def complete_course(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    enrollment = _active_enrollment(db, user, course_id)
    if enrollment.status == EnrollmentStatus.COMPLETED:
        raise InvalidState("Course is already completed")

    stats = progress_stats(db, enrollment)
    if stats["completed_lessons"] < stats["total_lessons"]:
        raise InvalidState("You must complete all lessons before marking course as completed")

    enrollment.status = EnrollmentStatus.COMPLETED
    enrollment.completed_at = utcnow()
    db.commit()
    db.refresh(enrollment)
    logger.info("User %s completed course %s", user.id, course_id)
    return enrollment


@router.post("/enrollments/{course_id}/cancel", status_code=204)
def cancel_enrollment(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    enrollment = _own_enrollment(db, user, course_id)
    if enrollment.status == EnrollmentStatus.COMPLETED:
        raise InvalidState("Cannot cancel a completed course")
    PurchaseFlow(db).cancel_enrollment(enrollment)
    return Response(status_code=204)


@router.get("/courses/{course_id}/analytics", response_model=schemas.CourseAnalytics)
def course_analytics(
    course_id: str,
    user: User = Depends(require_role(UserRole.INSTRUCTOR, UserRole.ADMIN)),
    db: Session = Depends(get_db),
):
    course = get_owned_course(db, course_id, user)

    counts = dict(
        db.query(Enrollment.status, func.count(Enrollment.id))
        .filter(Enrollment.course_id == course.id)
        .group_by(Enrollment.status)
        .all()
    )
    total = sum(counts.values())
    completed = counts.get(EnrollmentStatus.COMPLETED, 0)

    completions = dict(
        db.query(LessonProgress.lesson_id, func.count(LessonProgress.id))
        .join(Lesson, Lesson.id == LessonProgress.lesson_id)
        .filter(Lesson.course_id == course.id, LessonProgress.is_completed.is_(True))
        .group_by(LessonProgress.lesson_id)
        .all()
    )
    lessons = [
        {
            "lesson_id": lesson.id,
            "title": lesson.title,
            "position": lesson.order,
            "completions": completions.get(lesson.id, 0),
            "completion_rate": completions.get(lesson.id, 0) / total * 100 if total else 0.0,
        }
        for lesson in course.lessons
    ]
    return {
        "total_enrollments": total,
        "active_enrollments": counts.get(EnrollmentStatus.ACTIVE, 0),
        "completed_enrollments": completed,
        "completion_rate": round(completed / total * 100) if total else 0,
        "lessons": lessons,
    }
