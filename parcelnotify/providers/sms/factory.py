from __future__ import annotations

import logging

from parcelnotify.core.config import get_settings
from parcelnotify.core.errors import SmsConfigError
from parcelnotify.providers.sms.base import SmsTransport
from parcelnotify.providers.sms.fake_sms import FakeSmsTransport
from parcelnotify.providers.sms.hello_sms import HelloSmsTransport


logger = logging.getLogger(__name__)


def get_sms_transport() -> SmsTransport:
    settings = get_settings()
    transport = (settings.sms_transport or "hellosms").lower()

    if transport == "fake":
        return FakeSmsTransport()
    if transport == "hellosms":
        if settings.hello_sms_test_mode:
            logger.warning("HelloSMS is running in TEST MODE; no real SMS will be sent")
        return HelloSmsTransport()

    raise SmsConfigError(f"Unsupported SMS transport: {transport}")
