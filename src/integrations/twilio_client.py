from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from twilio.base.exceptions import TwilioException

from calls.errors import ConfigurationError, ProviderError
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    public_base_url: str
    machine_detection: bool = True

    @property
    def twiml_url(self) -> str:
        return f"{self.public_base_url}/api/twilio/twiml"

    @property
    def status_callback_url(self) -> str:
        return f"{self.public_base_url}/api/twilio/status"


def get_twilio_config() -> TwilioConfig:
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ConfigurationError("Twilio credentials are not configured")
    if not settings.public_base_url:
        raise ConfigurationError("PUBLIC_BASE_URL is required for Twilio callbacks")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        public_base_url=settings.public_base_url,
        machine_detection=settings.twilio_machine_detection,
    )


def build_twilio_client(cfg: TwilioConfig):
    from twilio.rest import Client

    return Client(cfg.account_sid, cfg.auth_token)


class TelephonyProvider(Protocol):
    async def originate(self, *, to: str, from_: str, timeout_seconds: float) -> str:
        """Start an outbound call and return the provider call id."""

    async def terminate(self, provider_call_id: str) -> None:
        """Hang up a call at the provider."""


class TwilioTelephonyProvider:
    """Twilio Programmable Voice adapter.

    The REST client is synchronous, so each request runs in a worker thread.
    Configuration is resolved per request: a missing credential only fails the
    operation that needs it.
    """

    def __init__(self, client=None, cfg: TwilioConfig | None = None) -> None:
        self._client = client
        self._cfg = cfg

    def _resolve(self):
        cfg = self._cfg or get_twilio_config()
        client = self._client or build_twilio_client(cfg)
        return client, cfg

    async def originate(self, *, to: str, from_: str, timeout_seconds: float) -> str:
        client, cfg = self._resolve()
        params = {
            "to": to,
            "from_": from_,
            "url": cfg.twiml_url,
            "method": "POST",
            "status_callback": cfg.status_callback_url,
            "status_callback_method": "POST",
            "status_callback_event": ["initiated", "ringing", "answered", "completed"],
            "timeout": max(1, int(timeout_seconds)),
        }
        if cfg.machine_detection:
            params["machine_detection"] = "DetectMessageEnd"
            params["async_amd"] = "true"
            params["async_amd_status_callback"] = cfg.status_callback_url

        try:
            call = await asyncio.to_thread(client.calls.create, **params)
        except TwilioException as exc:
            LOGGER.error("Twilio rejected call to %s: %s", to, exc)
            raise ProviderError(str(exc)) from exc
        return str(call.sid)

    async def terminate(self, provider_call_id: str) -> None:
        client, _cfg = self._resolve()
        try:
            await asyncio.to_thread(client.calls(provider_call_id).update, status="completed")
        except TwilioException as exc:
            LOGGER.error("Twilio could not end call %s: %s", provider_call_id, exc)
            raise ProviderError(str(exc)) from exc
