import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import List

from fastapi import APIRouter, Depends, Response
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace import schemas
from marketplace.auth import get_current_user
from marketplace.database import get_db
from marketplace.errors import Conflict, Forbidden, NotFound, ValidationError
from marketplace.models import Review, User
from marketplace.repositories import EnrollmentRepository
from marketplace.routes.courses import get_course_or_404

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/courses/{course_id}/reviews", tags=["reviews"])


def refresh_course_rating(db, course):
    average, count = (
        db.query(func.avg(Review.rating), func.count(Review.id))
        .filter(Review.course_id == course.id)
        .one()
    )
    course.review_count = count
    course.average_rating = Decimal(str(average or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@router.get("", response_model=List[schemas.ReviewOut])
def list_reviews(course_id: str, db: Session = Depends(get_db)):
    course = get_course_or_404(db, course_id)
    return db.query(Review).filter_by(course_id=course.id).order_by(Review.created_at.desc()).all()


@router.post("", response_model=schemas.ReviewOut, status_code=201)
def create_review(
    course_id: str,
    review_in: schemas.ReviewCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    course = get_course_or_404(db, course_id)
    if EnrollmentRepository(db).find_current(user.id, course.id) is None:
        raise Forbidden("You must be enrolled in the course to leave a review")
    if db.query(Review.id).filter_by(user_id=user.id, course_id=course.id).first() is not None:
        raise Conflict("You have already reviewed this course")

    review = Review(user_id=user.id, course_id=course.id, **review_in.model_dump())
    db.add(review)
    try:
        db.flush()
        refresh_course_rating(db, course)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("You have already reviewed this course")
    db.refresh(review)
    return review


def _own_review(db, user, course_id, review_id):
    review = db.get(Review, review_id)
    if review is None:
        raise NotFound("Review not found")
    if review.user_id != user.id:
        raise Forbidden("You can only change your own reviews")
    if review.course_id != course_id:
        raise ValidationError("Review does not belong to this course")
    return review


@router.patch("/{review_id}", response_model=schemas.ReviewOut)
def update_review(
    course_id: str,
    review_id: str,
    review_in: schemas.ReviewUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    review = _own_review(db, user, course_id, review_id)
    for field, value in review_in.model_dump(exclude_unset=True).items():
        setattr(review, field, value)
    db.flush()
    refresh_course_rating(db, review.course)
    db.commit()
    db.refresh(review)
    return review


@router.delete("/{review_id}", status_code=204)
def delete_review(
    course_id: str,
    review_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    review = _own_review(db, user, course_id, review_id)
    course = review.course
    db.delete(review)
    db.flush()
    refresh_course_rating(db, course)
    db.commit()
    logger.info("Review %s on course %s deleted by %s", review_id, course_id, user.id)
    return Response(status_code=204)
