"""
Tests for dateguard.delivery and dateguard.providers -- destination
canonicalization, simulated mode, live sends through mocked transports, and
conversion of provider failures into failed outcomes.
"""

from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest

from dateguard.config import (
    DeliveryConfig,
    FcmCredentials,
    ResendCredentials,
    TwilioCredentials,
)
from dateguard.delivery import (
    ChannelAdapter,
    InvalidDestinationError,
    build_channel_adapters,
    canonical_destination,
    format_phone_e164,
)
from dateguard.models import (
    DeliveryChannel,
    DeliveryStatus,
    EscalationMessage,
    TriggerType,
)
from dateguard.providers import (
    FcmPushProvider,
    ProviderError,
    ResendEmailProvider,
    TwilioSmsProvider,
)

TWILIO = TwilioCredentials(
    account_sid="AC0123456789abcdef",
    auth_token="9f8e7d6c5b4a",
    from_number="+15550001111",
)


def _message() -> EscalationMessage:
    return EscalationMessage(
        session_id="s1",
        trigger_type=TriggerType.PANIC_BUTTON,
        subject="EMERGENCY: Jordan - PANIC BUTTON PRESSED",
        text="DateGuard EMERGENCY: Jordan - PANIC BUTTON PRESSED",
    )


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# 1. Canonical destinations
# ---------------------------------------------------------------------------

class TestPhoneFormatting:
    @pytest.mark.parametrize("raw,expected", [
        ("5551234567", "+15551234567"),
        ("(555) 123-4567", "+15551234567"),
        ("555.123.4567", "+15551234567"),
        ("+1 555 123 4567", "+15551234567"),
        ("15551234567", "+15551234567"),
        ("+44 20 7946 0958", "+442079460958"),
    ])
    def test_e164(self, raw, expected):
        assert format_phone_e164(raw) == expected

    @pytest.mark.parametrize("raw", ["12345", "+1234567890123456", "call me"])
    def test_invalid_numbers_rejected(self, raw):
        with pytest.raises(InvalidDestinationError):
            format_phone_e164(raw)


class TestCanonicalDestination:
    def test_email_lowercased(self):
        assert canonical_destination(DeliveryChannel.EMAIL, " Pat@Example.COM ") == "pat@example.com"

    def test_bad_email_rejected(self):
        with pytest.raises(InvalidDestinationError):
            canonical_destination(DeliveryChannel.EMAIL, "not-an-email")

    def test_push_token_stripped(self):
        assert canonical_destination(DeliveryChannel.PUSH, " tok_abc ") == "tok_abc"

    def test_empty_destination_rejected(self):
        with pytest.raises(InvalidDestinationError):
            canonical_destination(DeliveryChannel.SMS, "  ")


# ---------------------------------------------------------------------------
# 2. Simulated mode
# ---------------------------------------------------------------------------

class TestSimulatedMode:
    def test_simulated_send_reports_test_mode(self):
        adapter = ChannelAdapter(DeliveryChannel.SMS)
        outcome = adapter.send("555-123-4567", _message())
        assert outcome.status == DeliveryStatus.TEST_MODE
        assert outcome.simulated is True
        assert outcome.succeeded is True
        assert outcome.destination == "+15551234567"

    def test_invalid_destination_fails_even_when_simulated(self):
        outcome = ChannelAdapter(DeliveryChannel.EMAIL).send("nobody", _message())
        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.succeeded is False

    def test_build_adapters_without_credentials_is_all_simulated(self):
        adapters = build_channel_adapters(DeliveryConfig())
        assert set(adapters) == set(DeliveryChannel)
        assert all(a.is_simulated for a in adapters.values())

    def test_build_adapters_mixes_live_and_simulated(self):
        adapters = build_channel_adapters(DeliveryConfig(twilio=TWILIO))
        assert adapters[DeliveryChannel.SMS].is_simulated is False
        assert adapters[DeliveryChannel.PUSH].is_simulated is True
        assert adapters[DeliveryChannel.EMAIL].is_simulated is True


# ---------------------------------------------------------------------------
# 3. Live providers
# ---------------------------------------------------------------------------

class TestTwilioProvider:
    def test_posts_form_to_messages_endpoint(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(201, json={"sid": "SM123"})

        provider = TwilioSmsProvider(TWILIO, client=_client(handler))
        receipt = provider.send("+15551234567", "help")

        assert receipt.message_id == "SM123"
        assert seen["url"].endswith("/Accounts/AC0123456789abcdef/Messages.json")
        assert seen["form"] == {"From": ["+15550001111"], "To": ["+15551234567"], "Body": ["help"]}
        assert seen["auth"].startswith("Basic ")

    def test_error_status_raises_provider_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"message": "Invalid 'To' Phone Number"})

        provider = TwilioSmsProvider(TWILIO, client=_client(handler))
        with pytest.raises(ProviderError, match="Invalid 'To'") as exc_info:
            provider.send("+15551234567", "help")
        assert exc_info.value.status_code == 400


class TestFcmProvider:
    def test_sends_high_priority_notification(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json={"success": 1, "failure": 0, "results": [{"message_id": "fcm-1"}]})

        provider = FcmPushProvider(FcmCredentials(server_key="AAAA-key"), client=_client(handler))
        receipt = provider.send("device-token", "help", subject="EMERGENCY")

        assert receipt.message_id == "fcm-1"
        assert seen["auth"] == "key=AAAA-key"
        assert seen["body"]["to"] == "device-token"
        assert seen["body"]["priority"] == "high"
        assert seen["body"]["notification"] == {"title": "EMERGENCY", "body": "help"}

    def test_rejected_token_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": 0, "failure": 1, "results": [{"error": "NotRegistered"}]})

        provider = FcmPushProvider(FcmCredentials(server_key="AAAA-key"), client=_client(handler))
        with pytest.raises(ProviderError, match="NotRegistered"):
            provider.send("stale-token", "help")

    def test_malformed_results_still_raise_provider_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"failure": 1, "results": ["bad"]})

        provider = FcmPushProvider(FcmCredentials(server_key="AAAA-key"), client=_client(handler))
        with pytest.raises(ProviderError, match="unknown"):
            provider.send("device-token", "help")

    def test_success_without_results_has_no_message_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": 1, "failure": 0, "results": "n/a"})

        provider = FcmPushProvider(FcmCredentials(server_key="AAAA-key"), client=_client(handler))
        assert provider.send("device-token", "help").message_id is None


class TestResendProvider:
    def test_sends_email(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json={"id": "email-1"})

        creds = ResendCredentials(api_key="re_123abc", from_address="alerts@dateguard.app")
        receipt = ResendEmailProvider(creds, client=_client(handler)).send(
            "pat@example.com", "help", subject="EMERGENCY"
        )

        assert receipt.message_id == "email-1"
        assert seen["auth"] == "Bearer re_123abc"
        assert seen["body"] == {
            "from": "alerts@dateguard.app",
            "to": ["pat@example.com"],
            "subject": "EMERGENCY",
            "text": "help",
        }


# ---------------------------------------------------------------------------
# 4. Adapter error boundary
# ---------------------------------------------------------------------------

class TestAdapterErrorBoundary:
    def test_live_send_reports_sent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, json={"sid": "SM999"})

        adapter = ChannelAdapter(DeliveryChannel.SMS, TwilioSmsProvider(TWILIO, client=_client(handler)))
        outcome = adapter.send("5551234567", _message())
        assert outcome.status == DeliveryStatus.SENT
        assert outcome.provider_message_id == "SM999"
        assert outcome.simulated is False

    def test_provider_rejection_becomes_failed_outcome(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"message": "Service unavailable"})

        adapter = ChannelAdapter(DeliveryChannel.SMS, TwilioSmsProvider(TWILIO, client=_client(handler)))
        outcome = adapter.send("5551234567", _message())
        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.error == "Service unavailable"

    def test_timeout_becomes_failed_outcome(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        adapter = ChannelAdapter(DeliveryChannel.SMS, TwilioSmsProvider(TWILIO, client=_client(handler)))
        outcome = adapter.send("5551234567", _message())
        assert outcome.status == DeliveryStatus.FAILED
        assert "timed out" in outcome.error

    def test_transport_error_becomes_failed_outcome(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        creds = ResendCredentials(api_key="re_123abc", from_address="alerts@dateguard.app")
        adapter = ChannelAdapter(DeliveryChannel.EMAIL, ResendEmailProvider(creds, client=_client(handler)))
        outcome = adapter.send("pat@example.com", _message())
        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.error.startswith("Transport error")

    def test_unexpected_provider_exception_becomes_failed_outcome(self):
        class _BrokenProvider(TwilioSmsProvider):
            def send(self, destination, text, subject=""):
                raise AttributeError("'str' object has no attribute 'get'")

        adapter = ChannelAdapter(DeliveryChannel.SMS, _BrokenProvider(TWILIO))
        outcome = adapter.send("5551234567", _message())
        assert outcome.status == DeliveryStatus.FAILED
        assert outcome.destination == "+15551234567"
        assert outcome.error.startswith("Unexpected provider error: AttributeError")
