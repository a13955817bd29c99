# reviewflow/channels/sms.py
from __future__ import annotations

import logging
from typing import Callable, Optional

import requests
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from reviewflow.config import Settings, settings as default_settings
from reviewflow.errors import AdapterFailure

from .base import ChannelAdapter, OutboundMessage, SendResult
from .compliance import ensure_footer, normalize_to_e164

logger = logging.getLogger(__name__)


def get_twilio_client(cfg: Settings) -> Client:
    sid = cfg.TWILIO_ACCOUNT_SID
    token = cfg.TWILIO_AUTH_TOKEN
    if not sid or not token:
        raise RuntimeError("Twilio credentials missing (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN)")
    return Client(sid, token, http_client=TwilioHttpClient(timeout=cfg.CHANNEL_TIMEOUT_SECONDS))


class SMSAdapter(ChannelAdapter):
    channel = "sms"

    def __init__(
        self,
        cfg: Optional[Settings] = None,
        client_factory: Optional[Callable[[Settings], Client]] = None,
    ):
        self.cfg = cfg or default_settings
        self._client_factory = client_factory or get_twilio_client
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = self._client_factory(self.cfg)
        return self._client

    def prepare_body(self, message: OutboundMessage) -> str:
        body = (message.body or "").rstrip()
        if message.review_link and message.review_link not in body:
            body = f"{body}\n\n{message.review_link}"
        return ensure_footer(body, self.cfg.SMS_COMPLIANCE_FOOTER)

    def send(self, message: OutboundMessage) -> SendResult:
        to = normalize_to_e164(message.to)
        if not to:
            raise AdapterFailure(self.channel, "invalid destination")
        if message.opted_out:
            raise AdapterFailure(self.channel, "recipient opted out")

        from_number = message.sender_number or self.cfg.TWILIO_SMS_FROM
        if not from_number:
            raise AdapterFailure(self.channel, "TWILIO_SMS_FROM missing")

        try:
            msg = self.client.messages.create(
                from_=from_number,
                to=to,
                body=self.prepare_body(message),
            )
        except requests.Timeout:
            raise AdapterFailure(self.channel, "timeout")
        except TwilioRestException as e:
            raise AdapterFailure(
                self.channel,
                f"provider rejected ({e.status}/{e.code}): {e.msg}",
                retryable=bool(e.status and (e.status == 429 or e.status >= 500)),
            )
        except (TwilioException, RuntimeError, requests.RequestException) as e:
            raise AdapterFailure(self.channel, str(e))

        logger.info("[sms] sent to %s**** sid=%s", to[:6], msg.sid)
        return SendResult(message_id=msg.sid)
