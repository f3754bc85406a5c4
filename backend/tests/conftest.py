"""
Pytest fixtures for coupon ledger tests.

Provides test database setup, seeded policy, and authenticated test client helpers.
"""

from datetime import timedelta

import pytest
from couponledger import create_app
from couponledger.extensions import db
from couponledger.models import CouponToken, CouponWallet, CouponRedemption, TokenStatus, RedemptionStatus
from couponledger.services import coupon_policy_service
from couponledger.services.coupon_policy_service import CACHE_EXTENSION_KEY
from couponledger.services.rate_limit_service import DETECTOR_EXTENSION_KEY
from couponledger.time_utils import utcnow


INTEGRATION_KEY = "test-integration-key"
ADMIN_KEY = "test-admin-key"
WHATSAPP_NUMBER = "905320000000"

PHONE = "+905551234567"
OTHER_PHONE = "+905559876543"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'INTEGRATION_API_KEY': INTEGRATION_KEY,
        'ADMIN_API_KEY': ADMIN_KEY,
        'WHATSAPP_NUMBER': WHATSAPP_NUMBER,
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
    """Fresh database with default policy for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        app.extensions[CACHE_EXTENSION_KEY].invalidate()
        app.extensions[DETECTOR_EXTENSION_KEY].clear()
        coupon_policy_service.ensure_default_policy()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def integration_headers():
    return {'Authorization': f'Bearer {INTEGRATION_KEY}'}


@pytest.fixture(scope='function')
def admin_headers():
    return {'X-API-Key': ADMIN_KEY, 'X-Admin-User': 'reception'}


def make_token(db_session, token="ABCDEFGH2345", status=TokenStatus.ISSUED, expires_in=timedelta(hours=24),
               phone=None, used_at=None, kiosk_id="K1"):
    """Insert a token directly; negative expires_in back-dates expiry."""
    now = utcnow()
    row = CouponToken(
        token=token,
        status=status,
        kiosk_id=kiosk_id,
        phone=phone,
        expires_at=now + expires_in,
        used_at=used_at,
        created_at=now,
        updated_at=now,
    )
    db_session.add(row)
    db_session.commit()
    return row


def make_wallet(db_session, phone=PHONE, coupons=0):
    """Insert a wallet whose totals are consistent with its balance."""
    wallet = CouponWallet(
        phone=phone,
        coupon_count=coupons,
        total_earned=coupons,
        total_redeemed=0,
        opted_in_marketing=True,
    )
    db_session.add(wallet)
    db_session.commit()
    return wallet


def make_redemption(db_session, redemption_id, phone=PHONE, coupons_used=4, age=timedelta(0),
                    status=RedemptionStatus.PENDING):
    row = CouponRedemption(
        id=redemption_id,
        phone=phone,
        coupons_used=coupons_used,
        reward_name="Ücretsiz Masaj",
        status=status,
        created_at=utcnow() - age,
    )
    db_session.add(row)
    db_session.commit()
    return row
