import os

# Must be set before payment_service.database is imported.
os.environ["DATABASE_URL"] = "sqlite:///./test_temp.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"

import fakeredis
import pytest
import requests
from fastapi.testclient import TestClient
from jose import jwt

from payment_service import dependencies
from payment_service.config import Settings
from payment_service.database import Base, SessionLocal, engine
from payment_service.gateways.redirect_signed import sign
from payment_service.gateways.registry import build_registry
from payment_service.main import app as fastapi_app
from payment_service.models import Course
from payment_service.ttl_store import KeyedTTLStore

USER_ID = 7
OTHER_USER_ID = 8


def make_settings(**overrides):
    values = dict(
        CLIENT_URL=None,
        RETRY_BASE_DELAY=0,
        REDIRECT_TMN_CODE="TESTTMN",
        REDIRECT_HASH_SECRET="redirect-secret",
        REDIRECT_PAY_URL="https://sandbox.bank.example/paymentv2/vpcpay.html",
        REDIRECT_RETURN_URL="https://learn.example/payment/redirect_signed/callback",
        REDIRECT_BANK_LIST_URL="https://sandbox.bank.example/qrpayauth/api/merchant/get_bank_list",
        OAUTH_CLIENT_ID="client-id",
        OAUTH_CLIENT_SECRET="client-secret",
        OAUTH_BASE_URL="https://api.wallet.example",
        OAUTH_RETURN_URL="https://learn.example/payment/oauth_capture/success",
        OAUTH_CANCEL_URL="https://learn.example/payment/oauth_capture/cancel",
        MANUAL_ACCOUNT_NUMBER="0123456789",
        MANUAL_RECONCILIATION_KEY="ops-key",
    )
    values.update(overrides)
    return Settings(**values)


def signed_return(code, amount="39900000", response_code="00", secret="redirect-secret"):
    params = {
        "vnp_TmnCode": "TESTTMN",
        "vnp_TxnRef": code,
        "vnp_Amount": amount,
        "vnp_ResponseCode": response_code,
        "vnp_TransactionStatus": response_code,
        "vnp_TransactionNo": "14123456",
        "vnp_BankCode": "NCB",
        "vnp_PayDate": "20261017103000",
        "vnp_OrderInfo": "Course payment 1",
    }
    params["vnp_SecureHash"] = sign(params, secret)
    return params


def auth_header(user_id=USER_ID):
    token = jwt.encode({"id": user_id}, "test-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def ttl_store():
    return KeyedTTLStore(fakeredis.FakeRedis(decode_responses=True))


@pytest.fixture
def gateway_session(mocker):
    return mocker.Mock(spec=requests.Session)


@pytest.fixture
def registry(settings, ttl_store, gateway_session):
    return build_registry(settings, ttl_store, session=gateway_session)


@pytest.fixture
def make_response(mocker):
    def factory(status_code=200, payload=None):
        response = mocker.Mock(status_code=status_code)
        response.json.return_value = payload if payload is not None else {}
        response.text = str(payload)
        return response
    return factory


@pytest.fixture
def course(db):
    course = Course(
        title="Python for Data Science",
        price=499000,
        discount_price=399000,
        currency="VND",
    )
    db.add(course)
    db.commit()
    db.refresh(course)
    return course


@pytest.fixture
def free_course(db):
    course = Course(title="Intro to Git", price=0, currency="VND")
    db.add(course)
    db.commit()
    db.refresh(course)
    return course


@pytest.fixture
def client(settings, registry):
    fastapi_app.dependency_overrides[dependencies.get_settings] = lambda: settings
    fastapi_app.dependency_overrides[dependencies.get_registry] = lambda: registry
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
