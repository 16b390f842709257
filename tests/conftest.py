"""
Pytest configuration and fixtures.

Every test gets a fresh app on an in-memory SQLite database with provider
callbacks dispatched inline and a mocked M-Pesa client.
"""

import os
import itertools
from datetime import timedelta
from unittest.mock import Mock

import pytest
from flask import g

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("FLASK_ENV", "testing")

from app import create_app  # noqa: E402
from config import Config  # noqa: E402
from extensions import db as _db  # noqa: E402
from models import User, AvailableTask, Task, Earning  # noqa: E402
from utils import utcnow  # noqa: E402


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    CALLBACK_DISPATCH_MODE = "sync"
    APP_BASE_URL = "https://tuzo.test"


@pytest.fixture
def mpesa():
    """Mocked Daraja client with unique request ids per call."""
    counter = itertools.count(1)
    client = Mock()

    def _stk_push(amount, phone, account_reference, description="Account activation"):
        n = next(counter)
        return {
            "checkout_request_id": f"ws_CO_{n:04d}",
            "merchant_request_id": f"MR_{n:04d}",
            "customer_message": "Success. Request accepted for processing",
        }

    def _b2c_payment(amount, phone, remarks, occasion=""):
        n = next(counter)
        return {"conversation_id": f"AG_{n:04d}", "originator_conversation_id": f"OC_{n:04d}"}

    client.stk_push.side_effect = _stk_push
    client.b2c_payment.side_effect = _b2c_payment
    return client


@pytest.fixture
def app(mpesa):
    app = create_app(TestConfig)
    app.extensions["mpesa"] = mpesa

    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def file_app(tmp_path, mpesa):
    """App on a file-backed SQLite database, for tests that need real cross-thread locking."""
    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'tuzo.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30, "check_same_thread": False}}

    app = create_app(FileConfig)
    app.extensions["mpesa"] = mpesa

    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()
        _db.engine.dispose()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(db):
    """Factory: make_user("alice", referrer=bob, activated=True)."""
    counter = itertools.count(1)

    def _make_user(username=None, referrer=None, activated=False, phone="254712345678"):
        n = next(counter)
        user = User(
            username=username or f"user{n}",
            full_name=f"Test User {n}",
            phone=phone,
            withdrawal_phone=phone,
            referral_code=f"CODE{n:04d}",
            referrer_id=referrer.id if referrer else None,
            is_activated=activated,
            activated_at=utcnow() if activated else None,
        )
        user.set_password("secret123")
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def credit(db):
    """Post an earning directly, bypassing the engines."""
    def _credit(user, source, amount):
        db.session.add(Earning(user_id=user.id, source=source, amount=amount, description="test credit"))
        db.session.commit()
    return _credit


@pytest.fixture
def catalog(db):
    """One catalog entry per task type, keyed by type."""
    tasks = {
        "ad": AvailableTask(type="ad", description="Watch an advert", duration="30 seconds", reward=10),
        "tiktok": AvailableTask(type="tiktok", description="Watch a TikTok", duration="1 minute", reward=15),
        "youtube": AvailableTask(type="youtube", description="Watch a video", duration="3 minutes", reward=15),
        "instagram": AvailableTask(type="instagram", description="Like a post", duration="1 minute", reward=7),
    }
    db.session.add_all(tasks.values())
    db.session.commit()
    return tasks


@pytest.fixture
def completed_at(db):
    """Insert a historical completion: completed_at(user, task, days_ago=3)."""
    def _completed_at(user, available_task, days_ago=0, hours_ago=0):
        task = Task(
            user_id=user.id,
            available_task_id=available_task.id,
            type=available_task.type,
            reward=available_task.reward,
            completed_at=utcnow() - timedelta(days=days_ago, hours=hours_ago),
        )
        db.session.add(task)
        db.session.commit()
        return task
    return _completed_at


@pytest.fixture
def login(client):
    """Start a Flask-Login session for `user` on the test client."""
    def _login(user):
        # Requests share the fixture's app context, so drop Flask-Login's cached user
        g.pop("_login_user", None)
        with client.session_transaction() as session:
            session["_user_id"] = str(user.id)
            session["_fresh"] = True
        return client
    return _login


def _stk_payload(checkout_request_id, result_code=0, receipt="QGH7XYZ123", amount=500):
    """Build a Daraja STK callback body."""
    callback = {
        "MerchantRequestID": "MR_0001",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": 20261018101010},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": callback}}


def _b2c_payload(conversation_id, result_code=0, desc="The service request is processed successfully."):
    return {"Result": {
        "ResultType": 0,
        "ResultCode": result_code,
        "ResultDesc": desc,
        "OriginatorConversationID": "OC_0001",
        "ConversationID": conversation_id,
        "TransactionID": "NLJ41HAY6Q",
        "ResultParameters": {"ResultParameter": [
            {"Key": "TransactionReceipt", "Value": "NLJ41HAY6Q"},
            {"Key": "TransactionAmount", "Value": 550},
        ]},
    }}


@pytest.fixture
def stk_payload():
    return _stk_payload


@pytest.fixture
def b2c_payload():
    return _b2c_payload
