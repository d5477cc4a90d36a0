# users_service/notifications.py
import os
from concurrent.futures import Future
from typing import Any, Dict, Optional

from common.notifications import MailDispatcher

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


def _welcome_message(payload: Dict[str, Any]):
    subject = "Welcome to Vehicle Rental"
    body = (
        f"Hello {payload.get('name') or ''},\n\n"
        f"Your account '{payload['username']}' is ready. "
        "You can now browse the fleet and book a vehicle.\n"
    )
    return subject, body


def _password_reset_message(payload: Dict[str, Any]):
    link = f"{FRONTEND_URL}/reset-password?token={payload['token']}"
    subject = "Reset your password"
    body = (
        f"Hello {payload.get('name') or ''},\n\n"
        "Someone asked to reset the password of your account. "
        f"Use the link below before {payload['expires_at']} UTC:\n\n"
        f"{link}\n\n"
        "If you did not ask for this, ignore this e-mail; your password stays unchanged.\n"
    )
    return subject, body


def _newsletter_message(payload: Dict[str, Any]):
    subject = "Newsletter subscription confirmed"
    body = (
        "Hello,\n\n"
        "You are now subscribed to the Vehicle Rental newsletter: "
        "new vehicles and offers will reach you at this address.\n"
    )
    return subject, body


class AccountNotifier(MailDispatcher):
    """
    Account e-mails: welcome, password reset, newsletter confirmation.
    """

    recipient_key = "email"
    reference_key = "email"

    def notify_welcome(self, payload: Dict[str, Any]) -> Optional[Future]:
        return self._submit("welcome", _welcome_message, payload)

    def notify_password_reset(self, payload: Dict[str, Any]) -> Optional[Future]:
        return self._submit("password_reset", _password_reset_message, payload)

    def notify_newsletter_subscription(self, payload: Dict[str, Any]) -> Optional[Future]:
        return self._submit("newsletter_subscription", _newsletter_message, payload)


dispatcher = AccountNotifier()


def get_notifier() -> AccountNotifier:
    return dispatcher
