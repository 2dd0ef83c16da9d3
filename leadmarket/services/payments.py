"""Payment provider gateway (Stripe) with bounded timeouts."""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

import stripe

from leadmarket.config import get_settings
from leadmarket.errors import PaymentProviderError, PaymentProviderTimeout

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Dollars to cents, rounded half up."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


@dataclass
class PaymentIntent:
    """The provider-side view of a payment intent."""

    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class PaymentGateway(ABC):
    """Payment operations the purchase and payout flows depend on."""

    @abstractmethod
    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        ...

    @abstractmethod
    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        ...

    @abstractmethod
    def create_transfer(
        self,
        amount: Decimal,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        ...


class StripeGateway(PaymentGateway):
    """
    Stripe-backed gateway.

    Every call goes through a client with a bounded network timeout; a
    timeout surfaces as ``PaymentProviderTimeout`` so callers leave their
    state untouched and retry, never assuming failure.
    """

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.currency = settings.platform_currency
        api_key = api_key or settings.stripe_secret_key
        if not api_key:
            logger.warning("STRIPE_SECRET_KEY not configured - payments will fail")
        self.client = stripe.StripeClient(
            api_key or "sk_unconfigured",
            http_client=stripe.RequestsClient(timeout=timeout or settings.stripe_timeout_seconds),
            max_network_retries=1,
        )

    @staticmethod
    def _to_intent(obj) -> PaymentIntent:
        return PaymentIntent(
            id=obj.id,
            status=obj.status,
            amount=obj.amount,
            currency=obj.currency,
            client_secret=getattr(obj, "client_secret", None),
            metadata=dict(obj.metadata or {}),
        )

    def create_payment_intent(self, amount, currency, metadata, idempotency_key=None):
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            intent = self.client.payment_intents.create(
                params={
                    "amount": to_minor_units(amount),
                    "currency": currency,
                    "metadata": metadata,
                    "automatic_payment_methods": {"enabled": True},
                },
                options=options,
            )
        except stripe.APIConnectionError as e:
            raise PaymentProviderTimeout(f"Payment provider unreachable: {e}") from e
        except stripe.StripeError as e:
            logger.error(f"Failed to create payment intent: {e}")
            raise PaymentProviderError(f"Failed to create payment intent: {e}") from e
        logger.info(f"Created payment intent {intent.id} for {metadata.get('lead_id')}")
        return self._to_intent(intent)

    def retrieve_payment_intent(self, payment_intent_id):
        try:
            intent = self.client.payment_intents.retrieve(payment_intent_id)
        except stripe.APIConnectionError as e:
            raise PaymentProviderTimeout(f"Payment provider unreachable: {e}") from e
        except stripe.InvalidRequestError as e:
            raise PaymentProviderError(f"Unknown payment intent {payment_intent_id}") from e
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to retrieve payment intent: {e}") from e
        return self._to_intent(intent)

    def create_transfer(self, amount, destination, idempotency_key, metadata=None):
        try:
            transfer = self.client.transfers.create(
                params={
                    "amount": to_minor_units(amount),
                    "currency": self.currency,
                    "destination": destination,
                    "metadata": metadata or {},
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.APIConnectionError as e:
            raise PaymentProviderTimeout(f"Payment provider unreachable: {e}") from e
        except stripe.StripeError as e:
            logger.error(f"Transfer to {destination} failed: {e}")
            raise PaymentProviderError(f"Transfer failed: {e}") from e
        return transfer.id


def get_payment_gateway() -> PaymentGateway:
    """Dependency for the configured payment gateway."""
    return StripeGateway()
