import logging
from decimal import Decimal
from urllib.parse import urlencode

from payment_service.config import Settings
from payment_service.gateways.base import (
    GatewayAdapter, SessionContext, SessionResult, VerificationOutcome,
)
from payment_service.models import PaymentMethod, Transaction

logger = logging.getLogger(__name__)

LOW_TRUST = "low"


def display_amount(amount) -> str:
    return f"{Decimal(str(amount)).normalize():f}"


class ManualProofGateway(GatewayAdapter):
    """Bank transfer to a fixed account, identified by a reference code.

    Nothing signs the inbound claim. Verification accepts the submitted code
    as proof and records the result as low trust; real reconciliation against
    bank statements is not implemented.
    """

    method = PaymentMethod.MANUAL_PROOF

    def __init__(self, settings: Settings):
        self.settings = settings

    def ensure_configured(self) -> None:
        self.settings.require("MANUAL_ACCOUNT_NUMBER")

    def reference_for(self, code: str) -> str:
        return f"{self.settings.MANUAL_REFERENCE_PREFIX}-{code}"

    def create_session(self, transaction: Transaction, context: SessionContext) -> SessionResult:
        self.ensure_configured()
        amount = display_amount(transaction.amount)
        reference = self.reference_for(transaction.code)
        qr_query = urlencode({"amount": amount, "addInfo": reference})
        payload = {
            "transaction_code": transaction.code,
            "bank_account": self.settings.MANUAL_ACCOUNT_NUMBER,
            "bank_name": self.settings.MANUAL_BANK_NAME,
            "account_name": self.settings.MANUAL_ACCOUNT_NAME,
            "amount": amount,
            "currency": transaction.currency,
            "reference": reference,
            "qr_image_url": (
                f"{self.settings.MANUAL_QR_BASE_URL.rstrip('/')}/"
                f"{self.settings.MANUAL_BANK_CODE}-{self.settings.MANUAL_ACCOUNT_NUMBER}"
                f"-compact.png?{qr_query}"
            ),
        }
        return SessionResult(
            display_payload=payload,
            details={**payload, "trust_level": LOW_TRUST},
        )

    def claimed_code(self, payload: dict) -> str | None:
        raw = payload.get("transactionCode") or payload.get("reference")
        if not raw:
            return None
        raw = str(raw).strip()
        prefix = f"{self.settings.MANUAL_REFERENCE_PREFIX}-"
        if raw.startswith(prefix):
            raw = raw[len(prefix):]
        return raw

    def verify_inbound(self, payload: dict, transaction: Transaction) -> VerificationOutcome:
        verified_via = payload.get("verifiedVia", "user")
        logger.warning(
            "Accepting unverified manual transfer for %s (via %s)",
            transaction.code, verified_via,
        )
        return VerificationOutcome(
            success=True,
            transaction_code=transaction.code,
            gateway_amount=Decimal(str(transaction.amount)),
            gateway_status="UNVERIFIED",
            details={
                "trust_level": LOW_TRUST,
                "verification": "unverified",
                "verified_via": verified_via,
            },
        )
