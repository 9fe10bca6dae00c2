"""
Pytest fixtures for MealPass backend tests.

Provides test database setup, member fixtures, package builders and test client.
"""

from datetime import date

import pytest
from mealpass import create_app
from mealpass.extensions import db
from mealpass.services import member_service, package_service
from mealpass.services.package_requests import parse_create_request


# Fixed business date so expiry and check-in rules do not depend on the wall clock
TODAY = date(2025, 3, 10)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'WEEKEND_DAYS': (5, 6),
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


def _member(member_type: str, natural_id: str, full_name: str):
    member = member_service.create_member(
        member_type=member_type,
        natural_id=natural_id,
        full_name=full_name,
    )
    db.session.commit()
    return member


@pytest.fixture(scope='function')
def student(db_session):
    """Student member with all meals preferred."""
    return _member("student", "2025-0001", "Ana Cruz")


@pytest.fixture(scope='function')
def faculty(db_session):
    """Faculty member."""
    return _member("faculty", "EMP-100", "Ben Ortiz")


@pytest.fixture(scope='function')
def make_package(db_session):
    """
    Factory: create a package through the service layer.

        make_package(member, package_type="partial", total_lunch=5)
    """
    def _make(member, package_type="full_time", *, today=TODAY, **fields):
        payload = {
            "member_id": member.id,
            "member_type": member.member_type,
            "package_type": package_type,
            "breakfast_enabled": False,
            "lunch_enabled": True,
            "dinner_enabled": False,
        }
        payload.update(fields)
        return package_service.create_package(parse_create_request(payload), today=today)

    return _make
