import hashlib
import hmac
import logging
import time
from decimal import Decimal
from urllib.parse import quote_plus, urlencode

import requests
from redis.exceptions import RedisError

from payment_service.config import Settings
from payment_service.errors import ConfigurationError, GatewayError
from payment_service.gateways.base import (
    GatewayAdapter, SessionContext, SessionResult, VerificationOutcome,
)
from payment_service.gateways.http import json_body, send
from payment_service.models import PaymentMethod, Transaction, utcnow
from payment_service.retry import retry
from payment_service.ttl_store import KeyedTTLStore

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "vnp_SecureHash"
SIGNATURE_TYPE_FIELD = "vnp_SecureHashType"
SUCCESS_CODE = "00"
PROTOCOL_VERSION = "2.1.0"

BANK_LIST_KEY = "redirect_signed:bank_list"
BANK_LIST_TTL_SECONDS = 3600

_PLACEHOLDER_BANK_CODES = {"", "undefined", "null"}


def canonical_query(params: dict) -> str:
    """Sorted, form-encoded query string without the signature fields."""
    items = sorted(
        (key, str(value))
        for key, value in params.items()
        if key not in (SIGNATURE_FIELD, SIGNATURE_TYPE_FIELD) and value not in (None, "")
    )
    return urlencode(items, quote_via=quote_plus)


def sign(params: dict, secret: str) -> str:
    return hmac.new(
        secret.encode(),
        canonical_query(params).encode(),
        hashlib.sha512,
    ).hexdigest()


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value())


def normalize_ip(ip: str | None) -> str:
    # The gateway only accepts IPv4.
    if not ip or ":" in ip:
        return "127.0.0.1"
    return ip


def normalize_bank_code(bank_code) -> str | None:
    if not isinstance(bank_code, str):
        return None
    bank_code = bank_code.strip()
    if bank_code.lower() in _PLACEHOLDER_BANK_CODES:
        return None
    return bank_code.upper()


class RedirectSignedGateway(GatewayAdapter):
    """Bank redirect gateway: HMAC-SHA512 signed pay URL and signed return."""

    method = PaymentMethod.REDIRECT_SIGNED

    def __init__(self, settings: Settings, ttl_store: KeyedTTLStore,
                 session: requests.Session | None = None, sleep=time.sleep):
        self.settings = settings
        self.ttl_store = ttl_store
        self.session = session or requests.Session()
        self.sleep = sleep

    def ensure_configured(self) -> None:
        self.settings.require("REDIRECT_TMN_CODE", "REDIRECT_HASH_SECRET", "REDIRECT_PAY_URL")

    def _return_url(self, context: SessionContext) -> str:
        if self.settings.REDIRECT_RETURN_URL:
            return self.settings.REDIRECT_RETURN_URL
        base = self.settings.CLIENT_URL or context.request.origin
        if not base:
            raise ConfigurationError("No return URL configured for redirect payments")
        return f"{base.rstrip('/')}/payment/redirect_signed/callback"

    def create_session(self, transaction: Transaction, context: SessionContext) -> SessionResult:
        self.ensure_configured()
        created = transaction.created_at or utcnow()
        params = {
            "vnp_Version": PROTOCOL_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.settings.REDIRECT_TMN_CODE,
            "vnp_Amount": to_minor_units(transaction.amount),
            "vnp_CurrCode": transaction.currency,
            "vnp_TxnRef": transaction.code,
            "vnp_OrderInfo": f"Course payment {transaction.course_id}",
            "vnp_OrderType": "billpayment",
            "vnp_Locale": self.settings.REDIRECT_LOCALE,
            "vnp_ReturnUrl": self._return_url(context),
            "vnp_IpAddr": normalize_ip(context.request.ip),
            "vnp_CreateDate": created.strftime("%Y%m%d%H%M%S"),
        }
        bank_code = self.validated_bank_code(context.bank_code)
        if bank_code:
            params["vnp_BankCode"] = bank_code

        signature = sign(params, self.settings.REDIRECT_HASH_SECRET)
        url = (
            f"{self.settings.REDIRECT_PAY_URL}?{canonical_query(params)}"
            f"&{SIGNATURE_FIELD}={signature}"
        )
        logger.info("Built redirect pay URL for transaction %s", transaction.code)
        return SessionResult(
            session_url=url,
            details={"bank_code": bank_code, "create_date": params["vnp_CreateDate"]},
        )

    def bank_list(self) -> list[dict]:
        cached = self.ttl_store.get(BANK_LIST_KEY)
        if cached is not None:
            return cached

        if not self.settings.REDIRECT_BANK_LIST_URL:
            raise ConfigurationError("REDIRECT_BANK_LIST_URL is not set")
        response = retry(
            lambda: send(
                self.session, "POST", self.settings.REDIRECT_BANK_LIST_URL,
                timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
                data={"tmn_code": self.settings.REDIRECT_TMN_CODE},
            ),
            max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
            base_delay=self.settings.RETRY_BASE_DELAY,
            sleep=self.sleep,
        )
        banks = json_body(response)
        if not isinstance(banks, list):
            raise ValueError("Bank list response is not a list")
        self.ttl_store.set(BANK_LIST_KEY, banks, BANK_LIST_TTL_SECONDS)
        return banks

    def validated_bank_code(self, bank_code) -> str | None:
        """The client's bank code if the gateway supports it, else None.

        Any failure to obtain the bank list drops the optional parameter.
        """
        bank_code = normalize_bank_code(bank_code)
        if not bank_code:
            return None
        try:
            supported = set()
            for bank in self.bank_list():
                code = bank.get("bank_code") or bank.get("shortName") or bank.get("code")
                if code:
                    supported.add(str(code).strip().upper())
        except (ConfigurationError, GatewayError, RedisError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("Could not validate bank code %s, omitting it: %s", bank_code, exc)
            return None
        if bank_code not in supported:
            logger.warning("Bank code %s is not supported by the gateway, omitting it", bank_code)
            return None
        return bank_code

    def claimed_code(self, payload: dict) -> str | None:
        return payload.get("vnp_TxnRef")

    def verify_inbound(self, payload: dict, transaction: Transaction) -> VerificationOutcome:
        self.ensure_configured()
        received = payload.get(SIGNATURE_FIELD)
        if not received:
            return VerificationOutcome.rejected("Missing signature")
        expected = sign(payload, self.settings.REDIRECT_HASH_SECRET)
        if not hmac.compare_digest(expected.lower(), str(received).lower()):
            logger.warning("Invalid redirect signature for %s", payload.get("vnp_TxnRef"))
            return VerificationOutcome.rejected("Invalid signature")

        code = payload.get("vnp_TxnRef")
        if payload.get("vnp_TmnCode") not in (None, self.settings.REDIRECT_TMN_CODE):
            return VerificationOutcome.rejected("Merchant code mismatch", code=code)
        try:
            minor_units = int(payload.get("vnp_Amount"))
        except (TypeError, ValueError):
            return VerificationOutcome.rejected("Malformed amount", code=code)

        response_code = payload.get("vnp_ResponseCode")
        transaction_status = payload.get("vnp_TransactionStatus")
        details = {
            "gateway_transaction_no": payload.get("vnp_TransactionNo"),
            "bank_code": payload.get("vnp_BankCode"),
            "pay_date": payload.get("vnp_PayDate"),
            "response_code": response_code,
        }
        if response_code != SUCCESS_CODE or transaction_status not in (None, SUCCESS_CODE):
            return VerificationOutcome.rejected(
                f"Payment failed with code {response_code}",
                code=code,
                status=response_code,
                terminal=True,
                details=details,
            )
        return VerificationOutcome(
            success=True,
            transaction_code=code,
            gateway_amount=Decimal(minor_units) / 100,
            gateway_status=response_code,
            details=details,
        )
