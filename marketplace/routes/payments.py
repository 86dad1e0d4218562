from decimal import Decimal

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from marketplace import schemas
from marketplace.auth import get_current_user, require_role
from marketplace.database import get_db
from marketplace.errors import Forbidden, NotFound
from marketplace.filters import PageRequest, page_request
from marketplace.models import Course, Payment, PaymentStatus, User, UserRole
from marketplace.purchases import PurchaseFlow

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/intent", response_model=schemas.PurchaseIntentOut)
def create_purchase_intent(
    request: schemas.PurchaseIntentRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return PurchaseFlow(db).create_purchase_intent(user, request.course_id)


@router.post("/confirm", response_model=schemas.PurchaseOut)
def confirm_purchase(
    request: schemas.ConfirmPurchaseRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return PurchaseFlow(db).confirm_purchase(user, request.payment_intent_id, request.course_id)


@router.get("", response_model=schemas.PaymentPage)
def payment_history(
    paging: PageRequest = Depends(page_request),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Payment).filter(Payment.user_id == user.id)
    total = query.count()
    payments = (
        query.order_by(Payment.created_at.desc())
        .offset(paging.offset)
        .limit(paging.limit)
        .all()
    )
    return {"payments": payments, "pagination": paging.pagination(total)}


@router.get("/earnings", response_model=schemas.Earnings)
def instructor_earnings(
    user: User = Depends(require_role(UserRole.INSTRUCTOR)),
    db: Session = Depends(get_db),
):
    completed = (
        db.query(Payment)
        .join(Course, Course.id == Payment.course_id)
        .filter(Course.instructor_id == user.id, Payment.status == PaymentStatus.COMPLETED)
    )
    total, sales = completed.with_entities(
        func.coalesce(func.sum(Payment.instructor_amount), 0), func.count(Payment.id)
    ).one()
    recent = completed.order_by(Payment.completed_at.desc()).limit(10).all()
    return {"total_earnings": Decimal(str(total)), "total_sales": sales, "recent_payments": recent}


@router.get("/{payment_id}", response_model=schemas.PaymentOut)
def get_payment(payment_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    if payment.user_id != user.id:
        raise Forbidden("Unauthorized access to payment")
    return payment
