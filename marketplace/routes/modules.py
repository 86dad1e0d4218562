from typing import List

from fastapi import APIRouter, Depends, Response
from sqlalchemy import func
from sqlalchemy.orm import Session

from marketplace import schemas
from marketplace.auth import get_optional_user
from marketplace.database import get_db
from marketplace.errors import InvalidState, NotFound
from marketplace.models import CourseStatus, Lesson, Module, User
from marketplace.routes.courses import (
    get_course_or_404,
    get_module,
    get_owned_course,
    has_access,
    instructor_only,
)

router = APIRouter(prefix="/courses/{course_id}/modules", tags=["modules"])


@router.get("", response_model=List[schemas.ModuleOut])
def list_modules(course_id: str, user: User = Depends(get_optional_user), db: Session = Depends(get_db)):
    course = get_course_or_404(db, course_id)
    if course.status != CourseStatus.PUBLISHED and not has_access(db, course, user):
        raise NotFound("Course not found")
    return course.modules


@router.post("", response_model=schemas.ModuleOut, status_code=201)
def create_module(
    course_id: str,
    module_in: schemas.ModuleCreate,
    user: User = Depends(instructor_only),
    db: Session = Depends(get_db),
):
    course = get_owned_course(db, course_id, user)
    last = db.query(func.max(Module.order)).filter_by(course_id=course.id).scalar()
    module = Module(**module_in.model_dump(), course_id=course.id,
                    order=0 if last is None else last + 1)
    db.add(module)
    db.commit()
    db.refresh(module)
    return module


@router.patch("/{module_id}", response_model=schemas.ModuleOut)
def update_module(
    course_id: str,
    module_id: str,
    module_in: schemas.ModuleUpdate,
    user: User = Depends(instructor_only),
    db: Session = Depends(get_db),
):
    module = get_module(db, get_owned_course(db, course_id, user), module_id)
    for field, value in module_in.model_dump(exclude_unset=True).items():
        setattr(module, field, value)
    db.commit()
    db.refresh(module)
    return module


@router.delete("/{module_id}", status_code=204)
def delete_module(
    course_id: str,
    module_id: str,
    user: User = Depends(instructor_only),
    db: Session = Depends(get_db),
):
    module = get_module(db, get_owned_course(db, course_id, user), module_id)
    if db.query(Lesson.id).filter_by(module_id=module.id).first() is not None:
        raise InvalidState("Move or delete the module's lessons first")
    db.delete(module)
    db.commit()
    return Response(status_code=204)
