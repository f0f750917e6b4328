"""SMTP email provider."""

import smtplib
from email.message import EmailMessage
from email.utils import make_msgid

from authcore.core.logging import get_logger
from authcore.services.email.base import EmailDeliveryError, EmailProvider, OutgoingEmail

logger = get_logger(__name__)


class SMTPEmailProvider(EmailProvider):
    """Delivers through an SMTP relay; ``use_ssl`` wins over ``use_tls``."""

    provider_type = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        from_email: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
        use_ssl: bool = False,
        timeout: int = 10,
    ):
        super().__init__(from_email)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.use_ssl = use_ssl
        self.timeout = timeout

    def _build(self, message: OutgoingEmail) -> EmailMessage:
        mime = EmailMessage()
        mime["From"] = self.from_email
        mime["To"] = message.to
        mime["Subject"] = message.subject
        mime["Message-ID"] = make_msgid(domain=self.from_email.rpartition("@")[2] or None)
        mime.set_content(message.body_text)
        if message.body_html:
            mime.add_alternative(message.body_html, subtype="html")
        return mime

    def _connect(self) -> smtplib.SMTP:
        if self.use_ssl:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        return smtplib.SMTP(self.host, self.port, timeout=self.timeout)

    def deliver(self, message: OutgoingEmail) -> str:
        mime = self._build(message)
        try:
            with self._connect() as server:
                if self.use_tls and not self.use_ssl:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(mime)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "email_send_failed",
                extra={"event": "email_send_failed", "email_to": message.to, "host": self.host, "error": str(e)},
                exc_info=True,
            )
            raise EmailDeliveryError(str(e)) from e

        logger.info(
            "email_sent",
            extra={"event": "email_sent", "email_to": message.to, "template": message.template},
        )
        return mime["Message-ID"]
