from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace import schemas
from marketplace.auth import get_current_user
from marketplace.database import get_db
from marketplace.filters import PageRequest, page_request
from marketplace.models import Enrollment, EnrollmentStatus, Review, User
from marketplace.routes.enrollments import progress_stats

router = APIRouter(prefix="/users/me", tags=["users"])


@router.get("", response_model=schemas.UserOut)
def me(user: User = Depends(get_current_user)):
    return user


@router.patch("", response_model=schemas.UserOut)
def update_profile(
    profile_in: schemas.ProfileUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    for field, value in profile_in.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    db.commit()
    db.refresh(user)
    return user


@router.get("/enrollments", response_model=List[schemas.EnrollmentDetail])
def my_enrollments(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    enrollments = (
        db.query(Enrollment)
        .filter(Enrollment.user_id == user.id, Enrollment.status != EnrollmentStatus.CANCELLED)
        .order_by(Enrollment.enrolled_at.desc())
        .all()
    )
    return [
        {**schemas.EnrollmentOut.model_validate(e).model_dump(), "progress_stats": progress_stats(db, e)}
        for e in enrollments
    ]


@router.get("/reviews", response_model=schemas.ReviewPage)
def my_reviews(
    paging: PageRequest = Depends(page_request),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Review).filter(Review.user_id == user.id)
    total = query.count()
    reviews = query.order_by(Review.created_at.desc()).offset(paging.offset).limit(paging.limit).all()
    return {"reviews": reviews, "pagination": paging.pagination(total)}
