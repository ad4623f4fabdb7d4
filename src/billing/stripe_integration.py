"""
Stripe Integration for Credit Rail

Verifies inbound webhook signatures and turns the verified body into a typed
BillingEvent. Nothing reaches the webhook gate unless it passed both steps.
"""

import json
import os
from typing import Optional, Union
import structlog
import stripe

from core.errors import InvalidWebhookEventError
from .events import BillingEvent, parse_event

logger = structlog.get_logger()

# Seconds a signed timestamp stays valid
DEFAULT_TOLERANCE = 300


class StripeIntegrationError(Exception):
    """Raised when the Stripe integration is not usable (e.g. missing secret)."""
    pass


class StripeIntegration:
    """
    Stripe webhook verification.

    Verification is done with stripe.WebhookSignature so the SDK's signing
    scheme and timestamp tolerance apply unchanged.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: int = DEFAULT_TOLERANCE,
    ):
        """
        Initialize Stripe integration.

        Args:
            api_key: Stripe secret key (or STRIPE_API_KEY env var)
            webhook_secret: Stripe webhook signing secret (or STRIPE_WEBHOOK_SECRET env var)
            tolerance: Max age in seconds of a signed payload
        """
        self.api_key = api_key or os.environ.get("STRIPE_API_KEY")
        self.webhook_secret = webhook_secret or os.environ.get("STRIPE_WEBHOOK_SECRET")
        self.tolerance = tolerance

        if self.api_key:
            stripe.api_key = self.api_key

        if self.webhook_secret:
            logger.info("stripe_integration_initialized", api_key_set=bool(self.api_key))
        else:
            logger.warning("stripe_webhook_secret_missing", api_key_set=bool(self.api_key))

    @property
    def is_available(self) -> bool:
        """Webhooks can be verified."""
        return bool(self.webhook_secret)

    def construct_event(self, payload: Union[bytes, str], signature: Optional[str]) -> BillingEvent:
        """
        Verify and parse a webhook delivery.

        Raises:
            StripeIntegrationError: no signing secret configured
            InvalidWebhookEventError: missing/invalid signature or malformed body
        """
        if not self.webhook_secret:
            raise StripeIntegrationError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise InvalidWebhookEventError("Missing Stripe-Signature header")

        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload

        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_signature_invalid", error=str(e))
            raise InvalidWebhookEventError("Invalid signature") from e

        try:
            raw = json.loads(body)
        except ValueError as e:
            raise InvalidWebhookEventError("Payload is not valid JSON") from e

        event = parse_event(raw)
        logger.info("stripe_event_verified", event_id=event.id, event_type=event.type)
        return event
