import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from marketplace import schemas
from marketplace.auth import require_role
from marketplace.database import get_db
from marketplace.errors import InvalidState, NotFound
from marketplace.filters import PageRequest, page_request
from marketplace.models import (
    Course,
    CourseStatus,
    Enrollment,
    Payment,
    PaymentStatus,
    User,
    UserRole,
    utcnow,
)
from marketplace.routes.courses import get_course_or_404

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)


def _money(value):
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def _revenue(query):
    revenue, transactions = query.with_entities(
        func.sum(Payment.amount), func.count(Payment.id)
    ).one()
    average = _money(revenue) / transactions if transactions else Decimal("0")
    return {
        "revenue": _money(revenue),
        "transactions": transactions,
        "average_transaction": _money(average),
    }


@router.get("/stats", response_model=schemas.AdminStats)
def dashboard_stats(db: Session = Depends(get_db)):
    revenue = (
        db.query(func.sum(Payment.amount))
        .filter(Payment.status == PaymentStatus.COMPLETED)
        .scalar()
    )
    return {
        "total_users": db.query(func.count(User.id)).scalar(),
        "total_instructors": db.query(func.count(User.id)).filter(User.role == UserRole.INSTRUCTOR).scalar(),
        "total_courses": db.query(func.count(Course.id)).scalar(),
        "published_courses": db.query(func.count(Course.id)).filter(Course.status == CourseStatus.PUBLISHED).scalar(),
        "total_enrollments": db.query(func.count(Enrollment.id)).scalar(),
        "total_revenue": _money(revenue),
    }


@router.patch("/courses/{course_id}/status", response_model=schemas.CourseOut)
def update_course_status(
    course_id: str,
    status_in: schemas.CourseStatusUpdate,
    db: Session = Depends(get_db),
):
    course = get_course_or_404(db, course_id)
    course.status = status_in.status
    db.commit()
    db.refresh(course)
    logger.info("Course %s moved to %s by moderation", course.id, course.status.value)
    return course


@router.get("/payments/analytics", response_model=schemas.PaymentAnalytics)
def payment_analytics(timeframe: int = Query(30, ge=1, le=365), db: Session = Depends(get_db)):
    since = utcnow() - timedelta(days=timeframe)
    completed = db.query(Payment).filter(Payment.status == PaymentStatus.COMPLETED)
    recent_window = completed.filter(Payment.completed_at >= since)

    top = (
        recent_window.join(Course, Course.id == Payment.course_id)
        .with_entities(Course.id, Course.title, func.sum(Payment.amount), func.count(Payment.id))
        .group_by(Course.id, Course.title)
        .order_by(func.sum(Payment.amount).desc())
        .limit(10)
        .all()
    )
    return {
        "total": _revenue(completed),
        "timeframe": _revenue(recent_window),
        "days": timeframe,
        "top_courses": [
            {"course_id": cid, "title": title, "revenue": _money(revenue), "sales": sales}
            for cid, title, revenue, sales in top
        ],
        "recent_payments": completed.order_by(Payment.completed_at.desc()).limit(20).all(),
    }


def _get_user(db, user_id):
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


@router.get("/users", response_model=schemas.UserPage)
def list_users(
    search: Optional[str] = Query(None),
    role: Optional[UserRole] = Query(None),
    is_active: Optional[bool] = Query(None),
    paging: PageRequest = Depends(page_request),
    db: Session = Depends(get_db),
):
    query = db.query(User)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(User.first_name.ilike(pattern), User.last_name.ilike(pattern),
                                 User.email.ilike(pattern)))
    if role is not None:
        query = query.filter(User.role == role)
    if is_active is not None:
        query = query.filter(User.is_active.is_(is_active))
    total = query.count()
    users = query.order_by(User.created_at.desc()).offset(paging.offset).limit(paging.limit).all()
    return {"users": users, "pagination": paging.pagination(total)}


@router.get("/users/{user_id}", response_model=schemas.UserOut)
def get_user(user_id: str, db: Session = Depends(get_db)):
    return _get_user(db, user_id)


@router.patch("/users/{user_id}", response_model=schemas.UserOut)
def update_user(user_id: str, user_in: schemas.AdminUserUpdate, db: Session = Depends(get_db)):
    user = _get_user(db, user_id)
    for field, value in user_in.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    db.commit()
    db.refresh(user)
    logger.info("User %s updated by admin: role=%s active=%s", user.id, user.role.value, user.is_active)
    return user


@router.delete("/users/{user_id}", status_code=204)
def deactivate_user(user_id: str, db: Session = Depends(get_db)):
    """Soft delete: the account stays, its tokens stop working."""
    user = _get_user(db, user_id)
    if user.role == UserRole.ADMIN:
        raise InvalidState("Cannot delete admin users")
    user.is_active = False
    db.commit()
    logger.info("User %s deactivated", user_id)
    return Response(status_code=204)
