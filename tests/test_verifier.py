import pytest
import redis
import requests

from payment_service.auth import RequestContext
from payment_service.gateways.registry import build_registry
from payment_service.models import Course, Enrollment, PaymentMethod
from payment_service.store import TransactionStore
from payment_service.verifier import CallbackVerifier

from conftest import OTHER_USER_ID, USER_ID, make_settings, signed_return


@pytest.fixture
def store(db):
    return TransactionStore(db)


@pytest.fixture
def verifier(db, registry):
    return CallbackVerifier(db, registry)


@pytest.fixture
def transaction(store, course):
    return store.create(USER_ID, course.id, course.effective_price, "VND",
                        PaymentMethod.REDIRECT_SIGNED)


def statuses(store, transaction_id):
    return [entry.status for entry in reversed(store.history(transaction_id))]


def enrollments(db, course):
    return db.query(Enrollment).filter_by(user_id=USER_ID, course_id=course.id).all()


def test_valid_callback_completes_and_enrolls(verifier, store, db, course, transaction):
    context = RequestContext(ip="203.0.113.9", user_agent="gateway/1.0")

    result = verifier.handle("redirect_signed", signed_return(transaction.code), context)

    assert result.status == "completed"
    assert result.already_handled is False
    assert result.course_id == course.id
    rows = enrollments(db, course)
    assert len(rows) == 1
    assert result.enrollment_id == rows[0].id
    assert rows[0].progress == 0
    assert statuses(store, transaction.id) == ["completed"]
    assert store.history(transaction.id)[0].ip_address == "203.0.113.9"
    db.refresh(course)
    assert course.enrolled_count == 1


def test_duplicate_callback_is_acknowledged_without_side_effects(verifier, store, db, course,
                                                                 transaction):
    payload = signed_return(transaction.code)
    verifier.handle("redirect_signed", payload)

    result = verifier.handle("redirect_signed", payload)

    assert result.status == "completed"
    assert result.already_handled is True
    assert len(enrollments(db, course)) == 1
    assert statuses(store, transaction.id) == ["completed", "duplicate"]
    db.refresh(course)
    assert course.enrolled_count == 1


def test_unknown_transaction_is_rejected(verifier):
    result = verifier.handle("redirect_signed", signed_return("RDS00000000000000DEADBEEF"))

    assert result.status == "rejected"
    assert result.transaction_id is None
    assert result.reason == "Transaction not found"


def test_tampered_callback_changes_nothing(verifier, store, db, course, transaction):
    payload = signed_return(transaction.code)
    payload["vnp_Amount"] = "100"

    result = verifier.handle("redirect_signed", payload)

    assert result.status == "rejected"
    assert store.get(transaction.id).status == "pending"
    assert statuses(store, transaction.id) == ["rejected"]
    assert enrollments(db, course) == []


def test_declined_payment_fails_transaction(verifier, store, db, course, transaction):
    result = verifier.handle("redirect_signed", signed_return(transaction.code, response_code="24"))

    assert result.status == "failed"
    refreshed = store.get(transaction.id)
    db.refresh(refreshed)
    assert refreshed.status == "failed"
    assert refreshed.details["response_code"] == "24"
    assert statuses(store, transaction.id) == ["failed"]
    assert enrollments(db, course) == []


def test_amount_mismatch_is_rejected_even_with_valid_signature(verifier, store, db, course,
                                                               transaction):
    result = verifier.handle("redirect_signed", signed_return(transaction.code, amount="1000000"))

    assert result.status == "rejected"
    assert result.reason == "Amount mismatch"
    assert store.get(transaction.id).status == "pending"
    assert statuses(store, transaction.id) == ["amount_mismatch"]
    assert enrollments(db, course) == []


def test_callback_on_wrong_method_is_rejected(verifier, store, transaction):
    result = verifier.handle("manual_proof", {"transactionCode": transaction.code})

    assert result.status == "rejected"
    assert result.reason == "Payment method mismatch"
    assert store.get(transaction.id).status == "pending"


def test_callback_after_cancellation_is_already_handled(verifier, store, db, course, transaction):
    store.transition(transaction.id, "pending", "cancelled", notes="Payment cancelled by user")

    result = verifier.handle("redirect_signed", signed_return(transaction.code))

    assert result.status == "cancelled"
    assert result.already_handled is True
    assert enrollments(db, course) == []


def test_manual_proof_completes_with_low_trust(verifier, store, db, course):
    transaction = store.create(USER_ID, course.id, course.effective_price, "VND",
                               PaymentMethod.MANUAL_PROOF)

    result = verifier.handle(
        "manual_proof",
        {"transactionCode": f"CampusLearning-{transaction.code}", "verifiedVia": "user"},
    )

    assert result.status == "completed"
    refreshed = store.get(transaction.id)
    db.refresh(refreshed)
    assert refreshed.details["trust_level"] == "low"
    assert refreshed.details["verified_via"] == "user"
    assert len(enrollments(db, course)) == 1


def test_unreachable_gateway_fails_transaction(verifier, store, db, course, gateway_session):
    transaction = store.create(USER_ID, course.id, course.effective_price, "VND",
                               PaymentMethod.OAUTH_CAPTURE)
    store.update_details(transaction.id, {"order_id": "ORDER-1"})
    gateway_session.request.side_effect = requests.ConnectionError("connection refused")

    result = verifier.handle("oauth_capture", {"transactionCode": transaction.code,
                                               "token": "ORDER-1"})

    assert result.status == "failed"
    refreshed = store.get(transaction.id)
    db.refresh(refreshed)
    assert refreshed.status == "failed"
    assert "connection refused" in refreshed.notes
    assert db.get(Course, course.id).enrolled_count == 0


def test_wallet_capture_with_wrong_amount_is_rejected(verifier, store, db, course,
                                                      gateway_session, make_response):
    transaction = store.create(USER_ID, course.id, course.effective_price, "VND",
                               PaymentMethod.OAUTH_CAPTURE)
    store.update_details(transaction.id, {"order_id": "ORDER-1"})
    captured = {
        "id": "ORDER-1",
        "status": "COMPLETED",
        "purchase_units": [{
            "reference_id": transaction.code,
            "payments": {"captures": [{
                "id": "CAP-1",
                "status": "COMPLETED",
                "amount": {"currency_code": "VND", "value": "1000"},
            }]},
        }],
    }
    gateway_session.request.side_effect = [
        make_response(200, {"access_token": "token-1", "expires_in": 3600}),
        make_response(200, captured),
    ]

    result = verifier.handle("oauth_capture", {"token": "ORDER-1",
                                               "transactionCode": transaction.code})

    assert result.status == "rejected"
    assert result.reason == "Amount mismatch"
    assert store.get(transaction.id).status == "pending"
    assert statuses(store, transaction.id) == ["amount_mismatch"]
    assert enrollments(db, course) == []


@pytest.fixture
def wallet_transaction(store, course):
    transaction = store.create(USER_ID, course.id, course.effective_price, "VND",
                               PaymentMethod.OAUTH_CAPTURE)
    store.update_details(transaction.id, {"order_id": "ORDER-1"})
    return transaction


def test_late_wallet_callback_after_cancellation_captures_nothing(verifier, store, db, course,
                                                                  wallet_transaction,
                                                                  gateway_session):
    store.transition(wallet_transaction.id, "pending", "cancelled", notes="Payment expired")

    result = verifier.handle("oauth_capture", {"token": "ORDER-1",
                                               "transactionCode": wallet_transaction.code})

    assert result.status == "cancelled"
    assert result.already_handled is True
    gateway_session.request.assert_not_called()
    assert statuses(store, wallet_transaction.id) == ["duplicate"]
    assert enrollments(db, course) == []


def test_unreachable_ttl_store_rejects_callback(verifier, ttl_store, mocker):
    mocker.patch.object(ttl_store, "get", side_effect=redis.exceptions.ConnectionError("redis down"))

    result = verifier.handle("oauth_capture", {"token": "ORDER-9"})

    assert result.status == "rejected"
    assert result.reason == "Transaction not found"


def test_non_json_gateway_body_fails_transaction(verifier, store, db, wallet_transaction,
                                                 gateway_session, make_response):
    maintenance = make_response(200)
    maintenance.json.side_effect = ValueError("Expecting value")
    maintenance.text = "<html>maintenance</html>"
    gateway_session.request.side_effect = [
        make_response(200, {"access_token": "token-1", "expires_in": 3600}),
        maintenance,
    ]

    result = verifier.handle("oauth_capture", {"token": "ORDER-1",
                                               "transactionCode": wallet_transaction.code})

    assert result.status == "failed"
    refreshed = store.get(wallet_transaction.id)
    db.refresh(refreshed)
    assert "<html>maintenance</html>" in refreshed.notes


def test_gateway_rejection_keeps_provider_payload_in_notes(verifier, store, db, wallet_transaction,
                                                           gateway_session, make_response):
    gateway_session.request.side_effect = [
        make_response(200, {"access_token": "token-1", "expires_in": 3600}),
        make_response(404, {"name": "RESOURCE_NOT_FOUND", "debug_id": "f00d"}),
    ]

    result = verifier.handle("oauth_capture", {"token": "ORDER-1",
                                               "transactionCode": wallet_transaction.code})

    assert result.status == "failed"
    refreshed = store.get(wallet_transaction.id)
    db.refresh(refreshed)
    assert "RESOURCE_NOT_FOUND" in refreshed.notes
    assert "f00d" in refreshed.notes


def test_unconfigured_wallet_rejects_callback_and_stays_pending(db, store, ttl_store,
                                                                wallet_transaction,
                                                                gateway_session):
    registry = build_registry(make_settings(OAUTH_CLIENT_ID=None), ttl_store,
                              session=gateway_session)

    result = CallbackVerifier(db, registry).handle(
        "oauth_capture", {"token": "ORDER-1", "transactionCode": wallet_transaction.code}
    )

    assert result.status == "rejected"
    assert result.reason == "Verification unavailable"
    assert store.get(wallet_transaction.id).status == "pending"
    assert statuses(store, wallet_transaction.id) == ["rejected"]
    gateway_session.request.assert_not_called()


def test_callback_for_another_users_transaction_is_rejected(verifier, store, db, course):
    transaction = store.create(USER_ID, course.id, course.effective_price, "VND",
                               PaymentMethod.MANUAL_PROOF)

    result = verifier.handle("manual_proof", {"transactionCode": transaction.code},
                             user_id=OTHER_USER_ID)

    assert result.status == "rejected"
    assert result.reason == "Transaction not found"
    assert store.get(transaction.id).status == "pending"
    assert enrollments(db, course) == []
