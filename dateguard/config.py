"""
Escalation policy and delivery provider configuration.

Configuration is explicit: an ``EscalationPolicy`` tunes the state machine
(grace periods, extension length, fan-out parallelism, retry bound) and a
``DeliveryConfig`` carries provider credentials.  Both are validated pydantic
models and can be loaded from a YAML file or, for credentials, from an
explicit environment mapping passed in by the entry point.

**Simulated mode:**  a channel whose credentials are missing -- or still hold
placeholder values copied from a setup guide -- runs in simulated mode.  The
decision is made once, when ``DeliveryConfig.simulated_channels()`` is called
to build the adapter set, never per destination.
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from dateguard.models import DeliveryChannel, GuardianContact


class ConfigurationError(ValueError):
    """Raised when a configuration source is structurally invalid."""


_PLACEHOLDER_MARKERS = ("placeholder", "your_", "xxx")
_PLACEHOLDER_VALUES = {"test", "demo", "changeme"}


def is_placeholder(value: Optional[str]) -> bool:
    """Whether a credential value is missing or an obvious placeholder."""
    if not value or not value.strip():
        return True
    lower = value.strip().lower()
    if lower in _PLACEHOLDER_VALUES:
        return True
    return any(marker in lower for marker in _PLACEHOLDER_MARKERS)


# ---------------------------------------------------------------------------
# Escalation policy
# ---------------------------------------------------------------------------

class EscalationPolicy(BaseModel):
    """Tuning knobs for the session state machine and fan-out."""

    expiry_grace_minutes: int = Field(
        default=0,
        ge=0,
        description=(
            "Minutes past scheduled_end_at before timer_expired fires.  "
            "Zero fires on the first sweep after the window closes."
        ),
    )
    checkin_grace_minutes: int = Field(
        default=5,
        ge=0,
        description="Slack added to the check-in cadence before missed_checkin fires.",
    )
    extension_minutes: int = Field(
        default=30,
        gt=0,
        description="How far extend_session pushes the window end by default.",
    )
    max_parallel_sends: int = Field(
        default=1,
        ge=1,
        le=64,
        description="Concurrent sends within one fan-out.  1 sends sequentially.",
    )
    max_delivery_retries: int = Field(
        default=2,
        ge=0,
        description="Explicit retries allowed per (guardian, channel) after the initial attempt.",
    )
    stalled_fan_out_minutes: int = Field(
        default=5,
        ge=0,
        description=(
            "How long a session may sit in ESCALATING before the sweep treats "
            "its fan-out as interrupted and completes it."
        ),
    )
    counterpart_prefix: str = Field(
        default="VAI",
        min_length=1,
        description="Prefix for anonymized counterpart identifiers.",
    )
    display_timezone: str = Field(
        default="UTC",
        description="IANA timezone used for times in outbound messages.",
    )
    app_name: str = Field(default="DateGuard")
    fallback_contacts: list[GuardianContact] = Field(
        default_factory=list,
        description=(
            "Contacts notified directly when a session resolves zero guardians "
            "(for example a partner safety desk).  The no_guardians_resolved "
            "error is reported regardless."
        ),
    )

    @field_validator("display_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{v}'") from exc
        return v


# ---------------------------------------------------------------------------
# Provider credentials
# ---------------------------------------------------------------------------

class TwilioCredentials(BaseModel):
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    api_base: str = "https://api.twilio.com/2010-04-01"

    @property
    def usable(self) -> bool:
        return not any(
            is_placeholder(v) for v in (self.account_sid, self.auth_token, self.from_number)
        )


class FcmCredentials(BaseModel):
    server_key: str = ""
    endpoint: str = "https://fcm.googleapis.com/fcm/send"

    @property
    def usable(self) -> bool:
        return not is_placeholder(self.server_key)


class ResendCredentials(BaseModel):
    api_key: str = ""
    from_address: str = ""
    endpoint: str = "https://api.resend.com/emails"

    @property
    def usable(self) -> bool:
        return not is_placeholder(self.api_key) and not is_placeholder(self.from_address)


class DeliveryConfig(BaseModel):
    """Credentials for every delivery provider plus the per-call timeout."""

    twilio: Optional[TwilioCredentials] = None
    fcm: Optional[FcmCredentials] = None
    resend: Optional[ResendCredentials] = None
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    def simulated_channels(self) -> set[DeliveryChannel]:
        """Channels that must run in simulated mode with this configuration."""
        simulated = set()
        if self.twilio is None or not self.twilio.usable:
            simulated.add(DeliveryChannel.SMS)
        if self.fcm is None or not self.fcm.usable:
            simulated.add(DeliveryChannel.PUSH)
        if self.resend is None or not self.resend.usable:
            simulated.add(DeliveryChannel.EMAIL)
        return simulated

    @property
    def is_simulated(self) -> bool:
        """True when no channel has live credentials."""
        return len(self.simulated_channels()) == len(DeliveryChannel)


class DateGuardConfig(BaseModel):
    policy: EscalationPolicy = Field(default_factory=EscalationPolicy)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)


DEFAULT_POLICY = EscalationPolicy()
"""Built-in policy: fire on the first sweep after expiry, sequential fan-out."""


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def load_config_from_yaml(path: str | Path) -> DateGuardConfig:
    """Load a ``DateGuardConfig`` from a YAML file.

    Example YAML structure::

        policy:
          expiry_grace_minutes: 5
          max_parallel_sends: 4
        delivery:
          request_timeout_seconds: 8
          twilio:
            account_sid: "AC..."
            auth_token: "..."
            from_number: "+15550001111"

    Both top-level keys are optional.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If the YAML is not a mapping or fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError("Config file must contain a mapping at the top level.")

    unknown = set(raw) - {"policy", "delivery"}
    if unknown:
        raise ConfigurationError(f"Unknown top-level config keys: {sorted(unknown)}")

    try:
        return DateGuardConfig(**raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration in {path}: {exc}") from exc


def load_delivery_config_from_env(environ: Mapping[str, str]) -> DeliveryConfig:
    """Build a ``DeliveryConfig`` from an environment-style mapping.

    Recognised keys: ``TWILIO_ACCOUNT_SID``, ``TWILIO_AUTH_TOKEN``,
    ``TWILIO_PHONE_NUMBER``, ``FCM_SERVER_KEY``, ``RESEND_API_KEY``,
    ``RESEND_FROM_ADDRESS``, ``DELIVERY_TIMEOUT_SECONDS``.  The mapping is
    passed in explicitly (typically ``os.environ`` at process start).
    """
    twilio = None
    if any(k in environ for k in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER")):
        twilio = TwilioCredentials(
            account_sid=environ.get("TWILIO_ACCOUNT_SID", ""),
            auth_token=environ.get("TWILIO_AUTH_TOKEN", ""),
            from_number=environ.get("TWILIO_PHONE_NUMBER", ""),
        )

    fcm = None
    if "FCM_SERVER_KEY" in environ:
        fcm = FcmCredentials(server_key=environ["FCM_SERVER_KEY"])

    resend = None
    if "RESEND_API_KEY" in environ:
        resend = ResendCredentials(
            api_key=environ["RESEND_API_KEY"],
            from_address=environ.get("RESEND_FROM_ADDRESS", ""),
        )

    timeout_raw = environ.get("DELIVERY_TIMEOUT_SECONDS")
    try:
        timeout = float(timeout_raw) if timeout_raw else 10.0
    except ValueError as exc:
        raise ConfigurationError(
            f"DELIVERY_TIMEOUT_SECONDS must be a number, got '{timeout_raw}'"
        ) from exc

    return DeliveryConfig(
        twilio=twilio,
        fcm=fcm,
        resend=resend,
        request_timeout_seconds=timeout,
    )
