from __future__ import annotations

import logging
from secrets import token_hex
import time

import httpx

from parcelnotify.core.config import get_settings
from parcelnotify.core.errors import SmsConfigError, SmsTransportError
from parcelnotify.providers.sms.base import SendResult


logger = logging.getLogger(__name__)


class HelloSmsTransport:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per transport for connection pooling.
        timeout_s = max(0.5, self._settings.sms_call_timeout_ms / 1000.0)
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, destination: str, body: str) -> SendResult:
        if self._settings.hello_sms_test_mode:
            # Never reach the gateway in test mode; ids are unique enough for callbacks and audits.
            return SendResult(success=True, provider_message_id=f"test_{int(time.time() * 1000)}_{token_hex(3)}")

        username = self._settings.hello_sms_username
        password = self._settings.hello_sms_password
        if not username or not password:
            raise SmsConfigError("HELLO_SMS_USERNAME and HELLO_SMS_PASSWORD are required for live SMS")

        payload = {
            "to": destination,
            "message": body,
            "from": self._settings.sms_sender_name,
            "sendApiCallback": False,
        }
        try:
            response = await self._get_client().post(
                self._settings.hello_sms_api_url,
                json=payload,
                auth=(username, password),
            )
        except httpx.HTTPError as exc:
            raise SmsTransportError(f"HelloSMS request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_success and data.get("status") == "success":
            message_ids = data.get("messageIds") or []
            first = message_ids[0] if message_ids and isinstance(message_ids[0], dict) else {}
            return SendResult(success=True, provider_message_id=str(first.get("apiMessageId") or "unknown"))

        error = str(data.get("statusText") or f"HTTP {response.status_code}")
        logger.warning("hellosms rejected message status=%s error=%s", response.status_code, error)
        return SendResult(success=False, error_message=error, status_code=int(response.status_code))
