# common/notifications.py
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Tuple

from .mailer import SmtpMailer

logger = logging.getLogger(__name__)

MessageBuilder = Callable[[Dict[str, Any]], Tuple[str, str]]


class MailDispatcher:
    """
    Sends e-mails on a small worker pool.

    Calls return immediately; delivery failures are logged and never reach
    the caller. Payloads are plain dicts built after commit, never ORM
    objects. Subclasses name the payload keys holding the recipient and
    the record the mail is about, and add one notify_* method per event.
    """

    recipient_key = "email"
    reference_key = "id"

    def __init__(self, mailer: Optional[SmtpMailer] = None, max_workers: int = 2):
        self.mailer = mailer or SmtpMailer()
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None

    def start(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="notifications"
            )
            logger.info("%s started (%s workers)", type(self).__name__, self.max_workers)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
            logger.info("%s stopped", type(self).__name__)

    def _run(self, kind: str, build: MessageBuilder, payload: Dict[str, Any]) -> None:
        reference = payload.get(self.reference_key)
        try:
            to = payload.get(self.recipient_key)
            if not to:
                logger.warning("No recipient for %s notification (%s %s)", kind, self.reference_key, reference)
                return
            subject, body = build(payload)
            self.mailer.send(to, subject, body)
        except Exception:
            logger.exception("Failed to deliver %s notification (%s %s)", kind, self.reference_key, reference)

    def _submit(self, kind: str, build: MessageBuilder, payload: Dict[str, Any]) -> Optional[Future]:
        if self._executor is None:
            self.start()
        try:
            return self._executor.submit(self._run, kind, build, payload)
        except RuntimeError:
            logger.exception(
                "Could not queue %s notification (%s %s)", kind, self.reference_key, payload.get(self.reference_key)
            )
            return None
