import os

os.environ["DATABASE_URL"] = "sqlite:///./test_marketplace.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketplace.database import Base, get_db
from marketplace.main import app as fastapi_app
from marketplace.models import Category, Course, CourseStatus, Lesson, User, UserRole

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_marketplace.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def auth_header(user_id, role="STUDENT", **claims):
    token = jwt.encode(
        {"sub": user_id, "email": f"{user_id}@example.com", "role": role, **claims},
        "test-secret",
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def make_user(db, user_id, role=UserRole.STUDENT, first_name="Ada", last_name="Lovelace"):
    user = User(id=user_id, email=f"{user_id}@example.com", first_name=first_name,
                last_name=last_name, role=role)
    db.add(user)
    db.commit()
    return user


def make_category(db, name="Programming", is_active=True):
    category = Category(name=name, slug=name.lower().replace(" ", "-"), is_active=is_active)
    db.add(category)
    db.commit()
    return category


def make_course(db, instructor, price="100.00", discount_price=None,
                status=CourseStatus.PUBLISHED, title="Python for Data Science", lessons=0,
                category=None):
    course = Course(
        title=title,
        slug=title.lower().replace(" ", "-"),
        description="Learn things",
        category_id=category.id if category is not None else None,
        level="Beginner",
        price=Decimal(price),
        discount_price=Decimal(discount_price) if discount_price is not None else None,
        status=status,
        instructor_id=instructor.id,
    )
    db.add(course)
    db.flush()
    for position in range(lessons):
        db.add(Lesson(course_id=course.id, title=f"Lesson {position + 1}", order=position,
                      content=f"Body {position + 1}", is_free=position == 0))
    db.commit()
    return course


@pytest.fixture
def instructor(db):
    return make_user(db, "instructor-1", role=UserRole.INSTRUCTOR, first_name="Grace", last_name="Hopper")


@pytest.fixture
def student(db):
    return make_user(db, "student-1")


@pytest.fixture
def other_student(db):
    return make_user(db, "student-2", first_name="Alan", last_name="Turing")


@pytest.fixture
def admin(db):
    return make_user(db, "admin-1", role=UserRole.ADMIN)


@pytest.fixture
def mock_intent(mocker):
    """Stripe hands back this intent for every PaymentIntent.create call."""
    intent = mocker.Mock()
    intent.id = "pi_test_123"
    intent.client_secret = "pi_test_123_secret_456"
    return mocker.patch("stripe.PaymentIntent.create", return_value=intent)


@pytest.fixture
def intent_status(mocker):
    """Patch PaymentIntent.retrieve; call with the status Stripe should report."""
    def _set(status):
        retrieved = mocker.Mock()
        retrieved.status = status
        return mocker.patch("stripe.PaymentIntent.retrieve", return_value=retrieved)
    return _set
