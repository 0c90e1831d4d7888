import logging
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests

from payment_service.config import Settings
from payment_service.errors import ConfigurationError, GatewayError, GatewayRejectedError
from payment_service.gateways.base import (
    GatewayAdapter, SessionContext, SessionResult, VerificationOutcome,
)
from payment_service.gateways.http import json_body, send
from payment_service.models import PaymentMethod, Transaction
from payment_service.retry import retry
from payment_service.ttl_store import KeyedTTLStore

logger = logging.getLogger(__name__)

TOKEN_SAFETY_MARGIN_SECONDS = 60
ORDER_KEY = "oauth_capture:order:{order_id}"
ORDER_TTL_SECONDS = 6 * 3600
ZERO_DECIMAL_CURRENCIES = {"HUF", "JPY", "KRW", "TWD", "VND"}
ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"


def format_amount(amount, currency: str) -> str:
    amount = Decimal(str(amount))
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return str(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def with_query(url: str, **params) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query) + [(k, str(v)) for k, v in params.items()]
    return urlunsplit(parts._replace(query=urlencode(query)))


def _error_issue(payload) -> str | None:
    if not isinstance(payload, dict):
        return None
    for detail in payload.get("details") or []:
        if isinstance(detail, dict) and detail.get("issue"):
            return detail["issue"]
    return payload.get("name")


class OAuthCaptureGateway(GatewayAdapter):
    """Wallet gateway: client-credentials token, order, buyer approval, capture.

    The bearer token is cached on the instance, one per process. Two threads
    refreshing it at once only costs a duplicate token request.
    """

    method = PaymentMethod.OAUTH_CAPTURE

    def __init__(self, settings: Settings, ttl_store: KeyedTTLStore,
                 session: requests.Session | None = None,
                 clock=time.monotonic, sleep=time.sleep):
        self.settings = settings
        self.ttl_store = ttl_store
        self.session = session or requests.Session()
        self.clock = clock
        self.sleep = sleep
        self._token = None
        self._token_expiry = 0.0

    def ensure_configured(self) -> None:
        self.settings.require("OAUTH_CLIENT_ID", "OAUTH_CLIENT_SECRET", "OAUTH_BASE_URL")

    def _url(self, path: str) -> str:
        return f"{self.settings.OAUTH_BASE_URL.rstrip('/')}{path}"

    def access_token(self) -> str:
        if self._token and self.clock() < self._token_expiry:
            return self._token

        response = send(
            self.session, "POST", self._url("/v1/oauth2/token"),
            timeout=self.settings.TOKEN_TIMEOUT_SECONDS,
            auth=(self.settings.OAUTH_CLIENT_ID, self.settings.OAUTH_CLIENT_SECRET),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        data = json_body(response)
        token = data.get("access_token")
        if not token:
            raise GatewayRejectedError("Token response carries no access_token", payload=data)
        self._token = token
        self._token_expiry = (
            self.clock() + int(data.get("expires_in", 0)) - TOKEN_SAFETY_MARGIN_SECONDS
        )
        return token

    def _call(self, method: str, path: str, headers: dict | None = None, **kwargs) -> dict:
        def attempt():
            request_headers = {
                "Authorization": f"Bearer {self.access_token()}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                **(headers or {}),
            }
            try:
                return send(
                    self.session, method, self._url(path),
                    timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
                    headers=request_headers, **kwargs,
                )
            except GatewayError as exc:
                if exc.status_code == 401:
                    self._token = None
                raise

        response = retry(
            attempt,
            max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
            base_delay=self.settings.RETRY_BASE_DELAY,
            sleep=self.sleep,
        )
        return json_body(response)

    def _redirect_urls(self, transaction: Transaction, context: SessionContext):
        origin = (context.request.origin or self.settings.CLIENT_URL or "").rstrip("/")
        return_url = self.settings.OAUTH_RETURN_URL or (
            f"{origin}/payment/oauth_capture/success" if origin else None
        )
        cancel_url = self.settings.OAUTH_CANCEL_URL or (
            f"{origin}/payment/oauth_capture/cancel" if origin else None
        )
        if not return_url or not cancel_url:
            raise ConfigurationError("No return or cancel URL configured for wallet payments")
        params = {"transactionCode": transaction.code, "transactionId": transaction.id}
        return with_query(return_url, **params), with_query(cancel_url, **params)

    def create_session(self, transaction: Transaction, context: SessionContext) -> SessionResult:
        self.ensure_configured()
        return_url, cancel_url = self._redirect_urls(transaction, context)
        order = self._call(
            "POST", "/v2/checkout/orders",
            headers={"PayPal-Request-Id": f"order-{transaction.code}"},
            json={
                "intent": "CAPTURE",
                "purchase_units": [{
                    "reference_id": transaction.code,
                    "custom_id": transaction.code,
                    "description": f"Payment for course {transaction.course_id}",
                    "amount": {
                        "currency_code": transaction.currency,
                        "value": format_amount(transaction.amount, transaction.currency),
                    },
                }],
                "application_context": {
                    "brand_name": self.settings.OAUTH_BRAND_NAME,
                    "landing_page": "BILLING",
                    "user_action": "PAY_NOW",
                    "shipping_preference": "NO_SHIPPING",
                    "return_url": return_url,
                    "cancel_url": cancel_url,
                },
            },
        )

        approve_url = next(
            (link.get("href") for link in order.get("links") or [] if link.get("rel") == "approve"),
            None,
        )
        if not approve_url:
            logger.error("Order %s for %s has no approve link", order.get("id"), transaction.code)
            raise ConfigurationError("Invalid gateway response. Missing approval URL.")

        self.ttl_store.set(
            ORDER_KEY.format(order_id=order["id"]), transaction.code, ORDER_TTL_SECONDS
        )
        logger.info("Created order %s for transaction %s", order["id"], transaction.code)
        return SessionResult(
            session_url=approve_url,
            details={"order_id": order["id"], "approval_url": approve_url},
        )

    def approval_url(self, transaction: Transaction, context: SessionContext) -> SessionResult:
        """Approval URL to resume a pending payment, creating a new order if none is stored."""
        stored = (transaction.details or {}).get("approval_url")
        if stored:
            return SessionResult(session_url=stored)
        return self.create_session(transaction, context)

    @staticmethod
    def _order_id(payload: dict) -> str | None:
        return payload.get("token") or payload.get("orderId") or payload.get("orderID")

    def claimed_code(self, payload: dict) -> str | None:
        if payload.get("transactionCode"):
            return payload["transactionCode"]
        order_id = self._order_id(payload)
        if not order_id:
            return None
        return self.ttl_store.get(ORDER_KEY.format(order_id=order_id))

    def _capture(self, order_id: str) -> dict:
        try:
            return self._call(
                "POST", f"/v2/checkout/orders/{order_id}/capture",
                headers={"PayPal-Request-Id": f"capture-{order_id}"},
                json={},
            )
        except GatewayRejectedError as exc:
            if exc.status_code == 422 and _error_issue(exc.payload) == ALREADY_CAPTURED:
                logger.info("Order %s was already captured", order_id)
                return self._call("GET", f"/v2/checkout/orders/{order_id}")
            raise

    def verify_inbound(self, payload: dict, transaction: Transaction) -> VerificationOutcome:
        self.ensure_configured()
        stored_order_id = (transaction.details or {}).get("order_id")
        order_id = stored_order_id or self._order_id(payload)
        if not order_id:
            return VerificationOutcome.rejected("No gateway order for this transaction")
        claimed_order_id = self._order_id(payload)
        if claimed_order_id and claimed_order_id != order_id:
            return VerificationOutcome.rejected("Order does not belong to this transaction")

        order = self._call("GET", f"/v2/checkout/orders/{order_id}")
        status = order.get("status")
        if status == "APPROVED":
            order = self._capture(order_id)
            status = order.get("status")

        units = order.get("purchase_units") or [{}]
        reference = units[0].get("reference_id") or units[0].get("custom_id")
        if status == "VOIDED":
            return VerificationOutcome.rejected(
                "Order was voided", code=reference, status=status, terminal=True
            )
        if status != "COMPLETED":
            return VerificationOutcome.rejected(
                f"Order is not in a capturable state. Current status: {status}",
                code=reference, status=status,
            )

        captures = (units[0].get("payments") or {}).get("captures") or []
        capture = captures[0] if captures else None
        if not capture or capture.get("status") != "COMPLETED":
            capture_status = capture.get("status") if capture else None
            return VerificationOutcome.rejected(
                f"Capture did not complete (status {capture_status})",
                code=reference,
                status=capture_status,
                terminal=capture_status in ("DECLINED", "FAILED"),
            )

        amount = capture.get("amount") or {}
        if amount.get("currency_code") != transaction.currency:
            return VerificationOutcome.rejected(
                f"Captured currency {amount.get('currency_code')} does not match",
                code=reference, status=status,
            )
        try:
            captured_value = Decimal(str(amount.get("value")))
        except InvalidOperation:
            return VerificationOutcome.rejected("Malformed captured amount", code=reference, status=status)

        return VerificationOutcome(
            success=True,
            transaction_code=reference,
            gateway_amount=captured_value,
            gateway_status=status,
            details={
                "order_id": order_id,
                "capture_id": capture.get("id"),
                "payer_id": payload.get("PayerID") or (order.get("payer") or {}).get("payer_id"),
            },
        )
