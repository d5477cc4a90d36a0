# bookings_service/notifications.py
from concurrent.futures import Future
from typing import Any, Dict, Optional

from common.notifications import MailDispatcher


def _booking_created_message(payload: Dict[str, Any]):
    subject = f"Booking #{payload['booking_id']} received"
    body = (
        f"Hello {payload.get('customer_name') or ''},\n\n"
        f"Your booking for {payload.get('vehicle_label') or 'your vehicle'} "
        f"from {payload['start_date']} to {payload['end_date']} "
        f"({payload['total_days']} day(s)) has been recorded with status {payload['status']}.\n"
        f"Total price: {payload['total_price']} {payload['currency']}.\n"
    )
    return subject, body


def _payment_completed_message(payload: Dict[str, Any]):
    subject = f"Payment confirmed - {payload['transaction_id']}"
    body = (
        f"Hello {payload.get('customer_name') or ''},\n\n"
        f"We received {payload['amount']} {payload['currency']} for booking "
        f"#{payload['booking_id']} ({payload.get('vehicle_label') or 'vehicle'}), "
        f"paid with {payload['card_masked']}.\n"
        f"Transaction: {payload['transaction_id']}\n"
        f"Rental period: {payload['start_date']} to {payload['end_date']} "
        f"({payload['total_days']} day(s)).\n"
    )
    return subject, body


class NotificationDispatcher(MailDispatcher):
    """
    Sends booking e-mails on a small worker pool.

    notify_* calls return immediately; delivery failures are logged and
    never reach the caller.
    """

    recipient_key = "customer_email"
    reference_key = "booking_id"

    def notify_booking_created(self, payload: Dict[str, Any]) -> Optional[Future]:
        return self._submit("booking_created", _booking_created_message, payload)

    def notify_payment_completed(self, payload: Dict[str, Any]) -> Optional[Future]:
        return self._submit("payment_completed", _payment_completed_message, payload)


dispatcher = NotificationDispatcher()


def get_notifier() -> NotificationDispatcher:
    return dispatcher
