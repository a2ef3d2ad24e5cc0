"""
Pytest fixtures for POS ledger backend tests.

Provides test database setup, reference data fixtures, and test client.
"""

from decimal import Decimal

import pytest
from posledger import create_app
from posledger.extensions import db
from posledger.models import Branch, Business, BusinessSettings, Vendor


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_RETRY_BACKOFF': 0,
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


@pytest.fixture(scope='function')
def business(db_session):
    business = Business(code="SOUQ", name="Souq Store", is_active=True)
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def other_business(db_session):
    business = Business(code="BETA", name="Beta Trading", is_active=True)
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def branch(db_session, business):
    branch = Branch(business_id=business.id, name="Muscat", code="MCT")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def second_branch(db_session, business):
    branch = Branch(business_id=business.id, name="Sohar", code="SOH")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def vendor(db_session):
    vendor = Vendor(code="V001", name="Dates Co", is_active=True)
    db_session.add(vendor)
    db_session.commit()
    return vendor


@pytest.fixture(scope='function')
def second_vendor(db_session):
    vendor = Vendor(code="V002", name="Incense House", is_active=True)
    db_session.add(vendor)
    db_session.commit()
    return vendor


@pytest.fixture(scope='function')
def make_settings(db_session, business):
    """Factory: write the business's pricing settings."""
    def _make(**overrides):
        values = dict(
            tax_enabled=False,
            tax_rate=Decimal("0"),
            vendor_commission_enabled=True,
            default_commission_rate=Decimal("10"),
            minimum_commission_amount=Decimal("5.000"),
        )
        values.update(overrides)
        row = db_session.query(BusinessSettings).filter_by(business_id=business.id).first()
        if row is None:
            row = BusinessSettings(business_id=business.id)
            db_session.add(row)
        for key, value in values.items():
            setattr(row, key, value)
        db_session.commit()
        return row
    return _make
