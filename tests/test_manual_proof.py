import pytest

from payment_service.errors import ConfigurationError
from payment_service.gateways.base import SessionContext
from payment_service.gateways.manual_proof import ManualProofGateway
from payment_service.models import PaymentMethod
from payment_service.store import TransactionStore

from conftest import USER_ID, make_settings


@pytest.fixture
def gateway(settings):
    return ManualProofGateway(settings)


@pytest.fixture
def transaction(db, course):
    return TransactionStore(db).create(
        USER_ID, course.id, course.effective_price, "VND", PaymentMethod.MANUAL_PROOF
    )


def test_session_shows_transfer_instructions(gateway, transaction):
    result = gateway.create_session(transaction, SessionContext())

    payload = result.display_payload
    assert result.session_url is None
    assert payload["bank_account"] == "0123456789"
    assert payload["amount"] == "399000"
    assert payload["reference"] == f"CampusLearning-{transaction.code}"
    assert payload["qr_image_url"].startswith(
        "https://img.vietqr.io/image/MB-0123456789-compact.png?amount=399000"
    )
    assert result.details["trust_level"] == "low"


def test_session_requires_account_number(transaction):
    with pytest.raises(ConfigurationError):
        ManualProofGateway(make_settings(MANUAL_ACCOUNT_NUMBER=None)).create_session(
            transaction, SessionContext()
        )


def test_claimed_code_strips_reference_prefix(gateway):
    assert gateway.claimed_code({"transactionCode": "CampusLearning-MPR1"}) == "MPR1"
    assert gateway.claimed_code({"reference": " MPR2 "}) == "MPR2"
    assert gateway.claimed_code({}) is None


def test_verification_is_recorded_as_low_trust(gateway, transaction):
    outcome = gateway.verify_inbound({"verifiedVia": "operator"}, transaction)

    assert outcome.success is True
    assert outcome.gateway_amount == transaction.amount
    assert outcome.details == {
        "trust_level": "low",
        "verification": "unverified",
        "verified_via": "operator",
    }
