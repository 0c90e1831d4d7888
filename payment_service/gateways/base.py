from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

from payment_service.auth import RequestContext
from payment_service.models import PaymentMethod, Transaction


@dataclass
class SessionContext:
    """What the client told us when it asked for a payment session."""

    request: RequestContext = field(default_factory=RequestContext)
    bank_code: str | None = None


@dataclass
class SessionResult:
    session_url: str | None = None
    display_payload: dict | None = None
    # Correlation data persisted into Transaction.details.
    details: dict = field(default_factory=dict)


@dataclass
class VerificationOutcome:
    success: bool
    transaction_code: str | None = None
    gateway_amount: Decimal | None = None
    gateway_status: str | None = None
    rejection_reason: str | None = None
    # A failure the gateway reports as final, as opposed to a rejected or
    # premature callback.
    terminal: bool = False
    details: dict = field(default_factory=dict)

    @classmethod
    def rejected(cls, reason: str, code: str | None = None, status: str | None = None,
                 terminal: bool = False, details: dict | None = None) -> "VerificationOutcome":
        return cls(
            success=False,
            transaction_code=code,
            gateway_status=status,
            rejection_reason=reason,
            terminal=terminal,
            details=details or {},
        )


class GatewayAdapter(ABC):
    """The wire protocol of one external payment network."""

    method: PaymentMethod

    @abstractmethod
    def ensure_configured(self) -> None:
        """Raise ConfigurationError when credentials are missing."""

    @abstractmethod
    def create_session(self, transaction: Transaction, context: SessionContext) -> SessionResult:
        ...

    @abstractmethod
    def claimed_code(self, payload: dict) -> str | None:
        """Transaction code the payload claims to be about. Not yet trusted."""

    @abstractmethod
    def verify_inbound(self, payload: dict, transaction: Transaction) -> VerificationOutcome:
        ...
