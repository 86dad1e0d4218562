import logging
from typing import List

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace import schemas
from marketplace.auth import require_role
from marketplace.database import get_db
from marketplace.errors import Conflict, InvalidState, NotFound
from marketplace.filters import CourseFilter, PageRequest, order_courses, page_request
from marketplace.models import Category, Course, CourseStatus, UserRole
from marketplace.routes.courses import slugify

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/categories", tags=["categories"])

admin_only = require_role(UserRole.ADMIN)


def _published_counts(db):
    return dict(
        db.query(Course.category_id, func.count(Course.id))
        .filter(Course.status == CourseStatus.PUBLISHED, Course.category_id.isnot(None))
        .group_by(Course.category_id)
        .all()
    )


def _with_count(category, counts):
    return {**schemas.CategoryOut.model_validate(category).model_dump(),
            "course_count": counts.get(category.id, 0)}


def _get_category(db, category_id):
    category = db.get(Category, category_id)
    if category is None:
        raise NotFound("Category not found")
    return category


def _ensure_unique(db, name=None, slug=None, exclude_id=None):
    clauses = []
    if name is not None:
        clauses.append(Category.name == name)
    if slug is not None:
        clauses.append(Category.slug == slug)
    if not clauses:
        return
    query = db.query(Category.id).filter(or_(*clauses))
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    if query.first() is not None:
        raise Conflict("Category name or slug already exists")


def _commit_category(db, category):
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Category name or slug already exists")
    db.refresh(category)
    return category


@router.get("", response_model=List[schemas.CategoryWithCount])
def list_categories(include_inactive: bool = Query(False), db: Session = Depends(get_db)):
    query = db.query(Category)
    if not include_inactive:
        query = query.filter(Category.is_active.is_(True))
    counts = _published_counts(db)
    return [_with_count(category, counts) for category in query.order_by(Category.name).all()]


@router.get("/{category_id}", response_model=schemas.CategoryDetail)
def get_category(
    category_id: str,
    paging: PageRequest = Depends(page_request),
    db: Session = Depends(get_db),
):
    category = _get_category(db, category_id)
    if not category.is_active:
        raise NotFound("Category not found")

    query = CourseFilter(category_id=category.id).apply(db.query(Course))
    total = query.count()
    courses = order_courses(query).offset(paging.offset).limit(paging.limit).all()
    return {
        "category": {**schemas.CategoryOut.model_validate(category).model_dump(), "course_count": total},
        "courses": courses,
        "pagination": paging.pagination(total),
    }


@router.post("", response_model=schemas.CategoryOut, status_code=201, dependencies=[Depends(admin_only)])
def create_category(category_in: schemas.CategoryCreate, db: Session = Depends(get_db)):
    slug = category_in.slug or slugify(category_in.name)
    _ensure_unique(db, name=category_in.name, slug=slug)
    category = Category(name=category_in.name, slug=slug, description=category_in.description)
    db.add(category)
    _commit_category(db, category)
    logger.info("Category %s (%s) created", category.id, category.slug)
    return category


@router.patch("/{category_id}", response_model=schemas.CategoryOut, dependencies=[Depends(admin_only)])
def update_category(category_id: str, category_in: schemas.CategoryUpdate, db: Session = Depends(get_db)):
    category = _get_category(db, category_id)
    changes = category_in.model_dump(exclude_unset=True)
    _ensure_unique(db, name=changes.get("name"), slug=changes.get("slug"), exclude_id=category.id)
    for field, value in changes.items():
        setattr(category, field, value)
    return _commit_category(db, category)


@router.patch("/{category_id}/activate", response_model=schemas.CategoryOut,
              dependencies=[Depends(admin_only)])
def activate_category(category_id: str, db: Session = Depends(get_db)):
    category = _get_category(db, category_id)
    category.is_active = True
    return _commit_category(db, category)


@router.patch("/{category_id}/deactivate", response_model=schemas.CategoryOut,
              dependencies=[Depends(admin_only)])
def deactivate_category(category_id: str, db: Session = Depends(get_db)):
    category = _get_category(db, category_id)
    category.is_active = False
    logger.info("Category %s deactivated", category.id)
    return _commit_category(db, category)


@router.delete("/{category_id}", status_code=204, dependencies=[Depends(admin_only)])
def delete_category(category_id: str, db: Session = Depends(get_db)):
    category = _get_category(db, category_id)
    if db.query(Course.id).filter_by(category_id=category.id).first() is not None:
        raise InvalidState("Cannot delete category with existing courses")
    db.delete(category)
    db.commit()
    return Response(status_code=204)
