from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from fastapi import Query
from sqlalchemy import or_

from marketplace.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from marketplace.models import Course, CourseStatus


class CourseSort(str, Enum):
    CREATED_AT = "created_at"
    PRICE = "price"
    RATING = "rating"
    STUDENTS = "students"
    TITLE = "title"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


SORT_COLUMNS = {
    CourseSort.CREATED_AT: Course.created_at,
    CourseSort.PRICE: Course.price,
    CourseSort.RATING: Course.average_rating,
    CourseSort.STUDENTS: Course.enrollment_count,
    CourseSort.TITLE: Course.title,
}


@dataclass
class CourseFilter:
    search: Optional[str] = None
    category_id: Optional[str] = None
    level: Optional[str] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    status: Optional[CourseStatus] = CourseStatus.PUBLISHED
    instructor_id: Optional[str] = None

    def apply(self, query):
        if self.status is not None:
            query = query.filter(Course.status == self.status)
        if self.instructor_id:
            query = query.filter(Course.instructor_id == self.instructor_id)
        if self.search:
            pattern = f"%{self.search}%"
            query = query.filter(or_(Course.title.ilike(pattern), Course.description.ilike(pattern)))
        if self.category_id:
            query = query.filter(Course.category_id == self.category_id)
        if self.level:
            query = query.filter(Course.level == self.level)
        if self.min_price is not None:
            query = query.filter(Course.price >= self.min_price)
        if self.max_price is not None:
            query = query.filter(Course.price <= self.max_price)
        return query


@dataclass
class PageRequest:
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    @property
    def offset(self):
        return (self.page - 1) * self.limit

    def pagination(self, total):
        return {
            "page": self.page,
            "limit": self.limit,
            "total": total,
            "pages": -(-total // self.limit),
        }


def course_filter(
    search: Optional[str] = Query(None),
    category_id: Optional[str] = Query(None),
    level: Optional[str] = Query(None),
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
):
    return CourseFilter(search=search, category_id=category_id, level=level,
                        min_price=min_price, max_price=max_price)


def page_request(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
):
    return PageRequest(page=page, limit=limit)


def order_courses(query, sort_by=CourseSort.CREATED_AT, sort_order=SortOrder.DESC):
    column = SORT_COLUMNS[sort_by]
    return query.order_by(column.asc() if sort_order == SortOrder.ASC else column.desc())
