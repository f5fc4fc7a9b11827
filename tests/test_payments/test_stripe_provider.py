"""Tests for the Stripe provider with the SDK patched out."""

import pytest
import stripe
from types import SimpleNamespace
from unittest.mock import patch

from medbook.config import Settings
from medbook.payments.base import PaymentConnectionError, PaymentProviderError, WebhookSignatureError
from medbook.payments.stripe_provider import StripePaymentProvider


@pytest.fixture
def provider():
    return StripePaymentProvider(Settings(stripe_secret_key="sk_test_123", stripe_webhook_secret="whsec_123"))


class TestStripePaymentProvider:
    """Tests for StripePaymentProvider."""

    def test_not_configured_without_key(self):
        """Test that a missing secret key reports unconfigured."""
        assert not StripePaymentProvider(Settings(stripe_secret_key="")).is_configured

    async def test_create_intent(self, provider):
        """Test intent creation forwards amount, metadata and idempotency key."""
        intent = SimpleNamespace(id="pi_1", client_secret="pi_1_secret_x", status="requires_payment_method")
        with patch("stripe.PaymentIntent.create", return_value=intent) as create:
            result = await provider.create_intent(10000, "usd", {"appointment_id": "a-1"}, "booking-a-1")

        assert result.id == "pi_1"
        assert result.client_secret == "pi_1_secret_x"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 10000
        assert kwargs["idempotency_key"] == "booking-a-1"
        assert kwargs["api_key"] == "sk_test_123"
        assert kwargs["metadata"] == {"appointment_id": "a-1"}

    @pytest.mark.parametrize(
        "status, succeeded, pending",
        [("succeeded", True, False), ("processing", False, True), ("canceled", False, False)],
    )
    async def test_verify_intent(self, provider, status, succeeded, pending):
        intent = SimpleNamespace(id="pi_1", status=status, amount_received=10000 if succeeded else 0)
        with patch("stripe.PaymentIntent.retrieve", return_value=intent):
            result = await provider.verify_intent("pi_1")

        assert result.succeeded is succeeded
        assert result.pending is pending

    async def test_connection_errors_are_transient(self, provider):
        """Test that network failures map to retryable errors."""
        with patch("stripe.PaymentIntent.retrieve", side_effect=stripe.APIConnectionError("network down")):
            with pytest.raises(PaymentConnectionError):
                await provider.verify_intent("pi_1")

    async def test_invalid_request_is_permanent(self, provider):
        error = stripe.InvalidRequestError("No such payment_intent", param="id")
        with patch("stripe.Refund.create", side_effect=error):
            with pytest.raises(PaymentProviderError) as exc_info:
                await provider.refund("pi_missing", 10000, "refund-a-1")

        assert not isinstance(exc_info.value, PaymentConnectionError)

    async def test_refund(self, provider):
        refund = SimpleNamespace(id="re_1", status="succeeded", amount=10000)
        with patch("stripe.Refund.create", return_value=refund) as create:
            result = await provider.refund("pi_1", 10000, "refund-a-1")

        assert result.refund_id == "re_1"
        assert create.call_args.kwargs["payment_intent"] == "pi_1"


class TestWebhookParsing:
    def test_payment_intent_event(self, provider):
        event = {
            "id": "evt_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_1", "amount": 10000}},
        }
        with patch("stripe.Webhook.construct_event", return_value=event) as construct:
            parsed = provider.parse_webhook(b"{}", "t=1,v1=abc")

        construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_123")
        assert parsed.intent_id == "pi_1"
        assert parsed.type == "payment_intent.succeeded"

    def test_other_events_carry_no_intent(self, provider):
        event = {"id": "evt_2", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}
        with patch("stripe.Webhook.construct_event", return_value=event):
            assert provider.parse_webhook(b"{}", "sig").intent_id is None

    def test_bad_signature(self, provider):
        error = stripe.SignatureVerificationError("No signatures found", "sig")
        with patch("stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(WebhookSignatureError):
                provider.parse_webhook(b"{}", "sig")

    def test_missing_secret(self):
        provider = StripePaymentProvider(Settings(stripe_secret_key="sk_test_123", stripe_webhook_secret=""))
        with pytest.raises(WebhookSignatureError):
            provider.parse_webhook(b"{}", "sig")
