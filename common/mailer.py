# common/mailer.py
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Optional

logger = logging.getLogger(__name__)


class SmtpMailer:
    """
    Plain-text e-mail sender.

    When SMTP_HOST is not set, messages are only logged ("simulated"),
    which is what development and the test suite use.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
    ):
        self.host = host if host is not None else os.getenv("SMTP_HOST")
        self.port = port or int(os.getenv("SMTP_PORT", "587"))
        self.username = username if username is not None else os.getenv("SMTP_USER")
        self.password = password if password is not None else os.getenv("SMTP_PASSWORD")
        self.sender = sender or os.getenv("SMTP_FROM", "no-reply@vehicle-rental.local")

    @property
    def simulated(self) -> bool:
        return not self.host

    def send(self, to: str, subject: str, body: str) -> None:
        """
        Send one message. SMTP errors propagate to the caller.
        """
        if self.simulated:
            logger.info("[SIMULATED] mail to %s: %s", to, subject)
            return

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)
        logger.info("Mail sent to %s: %s", to, subject)
