"""Console email provider (local development and tests)."""

import sys
import uuid

from authcore.core.logging import get_logger
from authcore.services.email.base import EmailProvider, OutgoingEmail

logger = get_logger(__name__)

_RULE = "=" * 72


class ConsoleEmailProvider(EmailProvider):
    """Writes messages to stdout and keeps them in ``outbox``."""

    provider_type = "console"

    def __init__(self, from_email: str = "noreply@authcore.local"):
        super().__init__(from_email)
        self.outbox: list[dict] = []

    def deliver(self, message: OutgoingEmail) -> str:
        message_id = f"console:{uuid.uuid4()}"
        self.outbox.append(
            {
                "to": message.to,
                "subject": message.subject,
                "body_text": message.body_text,
                "body_html": message.body_html,
                "template": message.template,
                "message_id": message_id,
            }
        )
        # Bodies may carry one-time codes; they go to stdout only, never to the log
        logger.info(
            "email_sent_console",
            extra={
                "event": "email_sent_console",
                "email_to": message.to,
                "template": message.template,
                "message_id": message_id,
            },
        )
        sys.stdout.write(
            f"\n{_RULE}\nFrom: {self.from_email}\nTo: {message.to}\nSubject: {message.subject}\n"
            f"Message-ID: {message_id}\n{_RULE}\n{message.body_text}\n{_RULE}\n"
        )
        return message_id
