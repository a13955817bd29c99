# reviewflow/channels/email.py
"""
Email via la API HTTP de Resend.

HTML con botón "Leave a Review" + pixel de apertura, y alternativa en texto plano.
El remitente es por negocio: nombre del negocio + su email (o noreply@EMAIL_FROM_DOMAIN).
"""
from __future__ import annotations

import logging
from email.utils import formataddr
from html import escape
from typing import Optional

import requests

from reviewflow.config import Settings, settings as default_settings
from reviewflow.errors import AdapterFailure

from .base import ChannelAdapter, OutboundMessage, SendResult

logger = logging.getLogger(__name__)


def build_html(message: OutboundMessage) -> str:
    paragraphs = "".join(
        f'<p style="margin:0 0 16px; color:#374151; font-size:15px; line-height:1.6;">{escape(p).replace(chr(10), "<br>")}</p>'
        for p in (message.body or "").split("\n\n")
        if p.strip()
    )
    button = ""
    if message.review_link:
        button = (
            '<div style="text-align:center; margin:30px 0;">'
            f'<a href="{escape(message.review_link, quote=True)}" '
            'style="background-color:#007bff; color:#ffffff; padding:12px 24px; text-decoration:none; '
            'border-radius:6px; display:inline-block; font-weight:bold;">Leave a Review</a>'
            "</div>"
        )
    pixel = ""
    if message.pixel_url:
        pixel = (
            f'<img src="{escape(message.pixel_url, quote=True)}" width="1" height="1" '
            'style="display:none;" alt="" />'
        )
    signature = ""
    if message.sender_name:
        signature = f'<p style="margin:16px 0 0; color:#374151; font-size:14px;">Best regards,<br>{escape(message.sender_name)}</p>'

    return f"""\
<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width, initial-scale=1.0"></head>
<body style="margin:0; padding:0; background-color:#f4f4f5; font-family:Arial,Helvetica,sans-serif;">
  <div style="max-width:600px; margin:0 auto; padding:20px; background-color:#ffffff;">
    {paragraphs}
    {button}
    {signature}
  </div>
  {pixel}
</body>
</html>"""


def build_text(message: OutboundMessage) -> str:
    text = (message.body or "").rstrip()
    if message.review_link and message.review_link not in text:
        text = f"{text}\n\n{message.review_link}"
    if message.sender_name:
        text = f"{text}\n\nBest regards,\n{message.sender_name}"
    return text


class EmailAdapter(ChannelAdapter):
    channel = "email"

    def __init__(self, cfg: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self.cfg = cfg or default_settings
        self.http = session or requests.Session()

    def from_header(self, message: OutboundMessage) -> str:
        address = (message.sender_email or "").strip() or f"noreply@{self.cfg.EMAIL_FROM_DOMAIN}"
        return formataddr((message.sender_name or "", address)) if message.sender_name else address

    def send(self, message: OutboundMessage) -> SendResult:
        to = (message.to or "").strip()
        if not to or "@" not in to:
            raise AdapterFailure(self.channel, "invalid destination")

        api_key = self.cfg.RESEND_API_KEY
        if not api_key:
            raise AdapterFailure(self.channel, "RESEND_API_KEY not configured")

        body = {
            "from": self.from_header(message),
            "to": [to],
            "subject": message.subject or self.cfg.EMAIL_DEFAULT_SUBJECT,
            "html": build_html(message),
            "text": build_text(message),
        }
        if message.sender_email:
            body["reply_to"] = message.sender_email

        try:
            r = self.http.post(
                self.cfg.RESEND_API_URL,
                json=body,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self.cfg.CHANNEL_TIMEOUT_SECONDS,
            )
        except requests.Timeout:
            raise AdapterFailure(self.channel, "timeout")
        except requests.RequestException as e:
            raise AdapterFailure(self.channel, f"transport error: {e}", retryable=True)

        if r.status_code >= 300:
            raise AdapterFailure(
                self.channel,
                f"provider rejected ({r.status_code}): {(r.text or '')[:300]}",
                retryable=r.status_code == 429 or r.status_code >= 500,
            )

        try:
            data = r.json() if r.content else {}
        except ValueError:
            data = {}
        message_id = str(data.get("id") or "")
        logger.info("[email] sent to %s id=%s", to, message_id or "?")
        return SendResult(message_id=message_id)
