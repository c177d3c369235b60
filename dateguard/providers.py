"""
External delivery providers.

Each provider sends one text to one canonical destination over HTTP and
either returns a ``ProviderReceipt`` or raises.  Non-2xx responses and
provider-reported errors raise ``ProviderError``; transport failures and
timeouts surface as ``httpx.HTTPError``.  Converting both into failed
delivery outcomes is the channel adapter's job, not the provider's.

Providers accept an optional ``httpx.Client`` so callers (and tests) can
supply transports; otherwise a short-lived client bounded by ``timeout`` is
opened per call.
"""

from __future__ import annotations

import abc
from typing import Any, Optional

import httpx

from dateguard.config import FcmCredentials, ResendCredentials, TwilioCredentials


class ProviderError(Exception):
    """The provider rejected or failed to accept a message."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderReceipt:
    """Acknowledgement returned by a provider for an accepted message."""

    def __init__(self, provider: str, message_id: Optional[str]) -> None:
        self.provider = provider
        self.message_id = message_id

    def __repr__(self) -> str:
        return f"ProviderReceipt(provider={self.provider!r}, message_id={self.message_id!r})"


class DeliveryProvider(abc.ABC):
    name: str = "provider"

    def __init__(self, timeout: float = 10.0, client: Optional[httpx.Client] = None) -> None:
        self._timeout = timeout
        self._client = client

    @abc.abstractmethod
    def send(self, destination: str, text: str, subject: str = "") -> ProviderReceipt:
        """Send ``text`` to ``destination``.  Raises on failure."""

    def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, timeout=self._timeout, **kwargs)
        with httpx.Client(timeout=self._timeout) as client:
            return client.post(url, **kwargs)

    def _json(self, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class TwilioSmsProvider(DeliveryProvider):
    """SMS through the Twilio Messages API."""

    name = "twilio"

    def __init__(
        self,
        credentials: TwilioCredentials,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self._credentials = credentials

    def send(self, destination: str, text: str, subject: str = "") -> ProviderReceipt:
        creds = self._credentials
        response = self._post(
            f"{creds.api_base}/Accounts/{creds.account_sid}/Messages.json",
            auth=(creds.account_sid, creds.auth_token),
            data={"From": creds.from_number, "To": destination, "Body": text},
        )
        data = self._json(response)
        if response.status_code >= 400:
            raise ProviderError(
                data.get("message") or f"Twilio error: {response.status_code}",
                status_code=response.status_code,
            )
        return ProviderReceipt(self.name, data.get("sid"))


class FcmPushProvider(DeliveryProvider):
    """Push notifications through the FCM HTTP endpoint."""

    name = "fcm"

    def __init__(
        self,
        credentials: FcmCredentials,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self._credentials = credentials

    def send(self, destination: str, text: str, subject: str = "") -> ProviderReceipt:
        response = self._post(
            self._credentials.endpoint,
            headers={"Authorization": f"key={self._credentials.server_key}"},
            json={
                "to": destination,
                "priority": "high",
                "notification": {"title": subject or "Emergency alert", "body": text},
            },
        )
        data = self._json(response)
        if response.status_code >= 400:
            raise ProviderError(
                f"FCM error: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        result = self._first_result(data)
        if data.get("failure"):
            raise ProviderError(f"FCM rejected token: {result.get('error') or 'unknown'}")
        return ProviderReceipt(self.name, result.get("message_id"))

    @staticmethod
    def _first_result(data: dict) -> dict:
        # FCM reports per-token results; anything but a list of objects is ignored.
        results = data.get("results")
        if isinstance(results, list) and results and isinstance(results[0], dict):
            return results[0]
        return {}


class ResendEmailProvider(DeliveryProvider):
    """Email through the Resend API."""

    name = "resend"

    def __init__(
        self,
        credentials: ResendCredentials,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self._credentials = credentials

    def send(self, destination: str, text: str, subject: str = "") -> ProviderReceipt:
        response = self._post(
            self._credentials.endpoint,
            headers={"Authorization": f"Bearer {self._credentials.api_key}"},
            json={
                "from": self._credentials.from_address,
                "to": [destination],
                "subject": subject or "Emergency alert",
                "text": text,
            },
        )
        data = self._json(response)
        if response.status_code >= 400:
            raise ProviderError(
                data.get("message") or f"Resend error: {response.status_code}",
                status_code=response.status_code,
            )
        return ProviderReceipt(self.name, data.get("id"))
