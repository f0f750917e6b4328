"""Email provider contract shared by the console and SMTP backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


class EmailDeliveryError(Exception):
    """Raised by providers when a message could not be handed off."""


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    subject: str
    body_text: str
    body_html: str | None = None
    template: str | None = None


class EmailProvider(ABC):
    """A configured delivery backend.

    Callers use ``send``; backends implement ``deliver`` and return a
    provider message ID (``console:<uuid>`` or the SMTP Message-ID).
    """

    provider_type: str = ""

    def __init__(self, from_email: str):
        self.from_email = from_email

    def send(
        self,
        to: str,
        subject: str,
        body_text: str,
        body_html: str | None = None,
        meta: dict | None = None,
    ) -> str:
        message = OutgoingEmail(
            to=to,
            subject=subject,
            body_text=body_text,
            body_html=body_html,
            template=(meta or {}).get("template"),
        )
        return self.deliver(message)

    @abstractmethod
    def deliver(self, message: OutgoingEmail) -> str:
        """Hand the message to the backend or raise EmailDeliveryError."""
