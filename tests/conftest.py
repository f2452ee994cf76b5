import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["APP_ENV"] = "development"
os.environ.pop("SUPERADMIN_EMAIL", None)
os.environ.pop("ENFORCE_DEPARTMENT_SCOPE", None)
os.environ.pop("SMTP_USER", None)

import pytest
from fastapi.testclient import TestClient

from helpdesk.config import get_settings
from helpdesk.database import Base, SessionLocal, engine
from helpdesk.main import app
from helpdesk.models import Department, User
from helpdesk.recommender import recommender
from helpdesk.security import create_access_token, hash_password, revoked_tokens


@pytest.fixture(autouse=True)
def fresh_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    recommender.reset()
    revoked_tokens.clear()
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


def make_user(db, name, email, role="user", company_name=None, department=None, status="active"):
    user = User(
        name=name,
        email=email,
        password_hash=hash_password("secret123"),
        role=role,
        company_name=company_name,
        department_id=department.department_id if department else None,
        status=status,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def it_department(db):
    department = Department(
        name="IT",
        description="IT support",
        categories=["Network", "Hardware", "Software", "Network"],
    )
    db.add(department)
    db.commit()
    db.refresh(department)
    return department


@pytest.fixture
def hr_department(db):
    department = Department(name="HR", description="People team", categories=["Payroll", "Leave"])
    db.add(department)
    db.commit()
    db.refresh(department)
    return department


@pytest.fixture
def user_u(db):
    return make_user(db, "Uma User", "uma@acme.com", company_name="Acme")


@pytest.fixture
def user_u2(db):
    return make_user(db, "Victor User", "victor@globex.com", company_name="Globex")


@pytest.fixture
def admin_a(db, it_department):
    return make_user(db, "Ada Admin", "ada@helpdesk.com", role="admin", department=it_department)


@pytest.fixture
def superadmin(db):
    return make_user(db, "Sam Super", "sam@helpdesk.com", role="superadmin")


@pytest.fixture
def auth_header():
    def build(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return build
