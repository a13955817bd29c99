# reviewflow/channels/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class OutboundMessage:
    to: str
    body: str
    subject: Optional[str] = None

    # identidad del remitente (por negocio)
    sender_name: Optional[str] = None
    sender_email: Optional[str] = None
    sender_number: Optional[str] = None

    # solo email
    review_link: Optional[str] = None
    pixel_url: Optional[str] = None

    # SMS a destinatarios que han respondido STOP
    opted_out: bool = False


@dataclass
class SendResult:
    message_id: str


class ChannelAdapter(ABC):
    """send(to, body) -> message_id, o AdapterFailure."""

    channel: str

    @abstractmethod
    def send(self, message: OutboundMessage) -> SendResult:
        raise NotImplementedError
