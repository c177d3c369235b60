"""
Delivery Channel Adapters.

A ``ChannelAdapter`` sends one message to one destination on one channel
(SMS, push, email) and always answers with a ``DeliveryOutcome``:

* destinations are converted to the channel's canonical form first (phone
  numbers to E.164);
* the adapter is either **live** (calls its provider) or **simulated** (logs
  the would-be send and reports ``test_mode``).  The mode is fixed when the
  adapter set is built from a ``DeliveryConfig``;
* anything a provider raises (rejections, transport errors, timeouts, a
  malformed response) is captured and returned as a ``failed`` outcome --
  nothing propagates;
* there are no retries here.  Retry policy belongs to the orchestrator.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

import httpx

from dateguard.config import DeliveryConfig
from dateguard.logging_config import mask_destination
from dateguard.models import (
    DeliveryChannel,
    DeliveryOutcome,
    DeliveryStatus,
    EscalationMessage,
)
from dateguard.providers import (
    DeliveryProvider,
    FcmPushProvider,
    ProviderError,
    ResendEmailProvider,
    TwilioSmsProvider,
)

logger = logging.getLogger(__name__)


class InvalidDestinationError(ValueError):
    """A destination cannot be put into its channel's canonical form."""


# ---------------------------------------------------------------------------
# Destination canonicalization
# ---------------------------------------------------------------------------

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")


def format_phone_e164(phone: str, default_country_code: str = "1") -> str:
    """Normalize a phone number to E.164.

    Ten-digit numbers without a leading ``+`` are assumed to be in the
    default country (North America).

    Raises:
        InvalidDestinationError: If too few or too many digits remain.
    """
    raw = phone.strip()
    digits = re.sub(r"\D", "", raw)
    if not raw.startswith("+") and len(digits) == 10:
        digits = default_country_code + digits
    if not 8 <= len(digits) <= 15:
        raise InvalidDestinationError(f"Not a valid phone number: {mask_destination(raw)}")
    return "+" + digits


def canonical_destination(channel: DeliveryChannel, destination: Optional[str]) -> str:
    """Canonical form of ``destination`` for ``channel``."""
    if destination is None or not destination.strip():
        raise InvalidDestinationError(f"Empty {channel.value} destination")
    if channel == DeliveryChannel.SMS:
        return format_phone_e164(destination)
    if channel == DeliveryChannel.EMAIL:
        email = destination.strip().lower()
        if not _EMAIL_RE.match(email):
            raise InvalidDestinationError(f"Not a valid email address: {mask_destination(email)}")
        return email
    return destination.strip()


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class ChannelAdapter:
    """Uniform send interface for one channel.

    ``provider=None`` puts the adapter in simulated mode.
    """

    def __init__(self, channel: DeliveryChannel, provider: Optional[DeliveryProvider] = None) -> None:
        self.channel = channel
        self._provider = provider

    @property
    def is_simulated(self) -> bool:
        return self._provider is None

    def send(self, destination: str, message: EscalationMessage) -> DeliveryOutcome:
        """Send ``message`` to ``destination``; never raises."""
        try:
            canonical = canonical_destination(self.channel, destination)
        except InvalidDestinationError as exc:
            logger.warning("Rejected %s destination: %s", self.channel.value, exc)
            return self._outcome(destination or "", DeliveryStatus.FAILED, error=str(exc))

        if self._provider is None:
            logger.info(
                "TEST MODE: would send %s %s message to %s",
                self.channel.value,
                message.kind.value,
                mask_destination(canonical),
            )
            return self._outcome(canonical, DeliveryStatus.TEST_MODE)

        try:
            receipt = self._provider.send(canonical, message.text, subject=message.subject)
        except ProviderError as exc:
            logger.warning(
                "%s delivery to %s rejected: %s",
                self._provider.name,
                mask_destination(canonical),
                exc,
            )
            return self._outcome(canonical, DeliveryStatus.FAILED, error=str(exc))
        except httpx.TimeoutException:
            logger.warning(
                "%s delivery to %s timed out", self._provider.name, mask_destination(canonical)
            )
            return self._outcome(canonical, DeliveryStatus.FAILED, error="Provider request timed out")
        except httpx.HTTPError as exc:
            logger.warning(
                "%s delivery to %s failed: %s",
                self._provider.name,
                mask_destination(canonical),
                exc,
            )
            return self._outcome(canonical, DeliveryStatus.FAILED, error=f"Transport error: {exc}")
        except Exception as exc:
            logger.error(
                "%s delivery to %s raised unexpectedly",
                self._provider.name,
                mask_destination(canonical),
                exc_info=True,
            )
            return self._outcome(
                canonical,
                DeliveryStatus.FAILED,
                error=f"Unexpected provider error: {type(exc).__name__}: {exc}",
            )

        return self._outcome(
            canonical, DeliveryStatus.SENT, provider_message_id=receipt.message_id
        )

    def _outcome(
        self,
        destination: str,
        status: DeliveryStatus,
        error: Optional[str] = None,
        provider_message_id: Optional[str] = None,
    ) -> DeliveryOutcome:
        return DeliveryOutcome(
            channel=self.channel,
            destination=destination,
            status=status,
            error=error,
            provider_message_id=provider_message_id,
            simulated=self.is_simulated,
        )

    def __repr__(self) -> str:
        mode = "simulated" if self.is_simulated else "live"
        return f"ChannelAdapter(channel={self.channel.value}, mode={mode})"


def build_channel_adapters(
    config: DeliveryConfig,
    client: Optional[httpx.Client] = None,
) -> dict[DeliveryChannel, ChannelAdapter]:
    """One adapter per channel, live where ``config`` has usable credentials.

    The simulated/live decision is made here, once.
    """
    simulated = config.simulated_channels()
    timeout = config.request_timeout_seconds
    adapters: dict[DeliveryChannel, ChannelAdapter] = {}

    providers: dict[DeliveryChannel, Optional[DeliveryProvider]] = {
        DeliveryChannel.SMS: None,
        DeliveryChannel.PUSH: None,
        DeliveryChannel.EMAIL: None,
    }
    if DeliveryChannel.SMS not in simulated:
        providers[DeliveryChannel.SMS] = TwilioSmsProvider(config.twilio, timeout=timeout, client=client)
    if DeliveryChannel.PUSH not in simulated:
        providers[DeliveryChannel.PUSH] = FcmPushProvider(config.fcm, timeout=timeout, client=client)
    if DeliveryChannel.EMAIL not in simulated:
        providers[DeliveryChannel.EMAIL] = ResendEmailProvider(config.resend, timeout=timeout, client=client)

    for channel, provider in providers.items():
        adapters[channel] = ChannelAdapter(channel, provider)
        if provider is None:
            logger.info("Delivery channel %s running in simulated mode", channel.value)

    return adapters
