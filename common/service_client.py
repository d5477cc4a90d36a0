# common/service_client.py
import logging
from typing import Any, Dict, Optional

import httpx

from .auth import make_service_account_token
from .circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)


class UpstreamServiceError(Exception):
    """
    Raised when a peer service cannot be used.

    status_code is 503 while the circuit is open and 502 when the peer
    is unreachable or answers with an unexpected status.
    """

    def __init__(self, service: str, detail: str, status_code: int = 502):
        self.service = service
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{service}: {detail}")


class ServiceClient:
    """
    Minimal JSON client for calling another service as a service account.

    Every call goes through the client's circuit breaker. A 404 from the
    peer is returned as None so callers can map it to their own
    not-found semantics.
    """

    def __init__(
        self,
        caller: str,
        base_url: str,
        breaker: CircuitBreaker,
        timeout: float = 5.0,
    ):
        self.caller = caller
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker
        self.timeout = timeout

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        if not self.breaker.allow_request():
            raise UpstreamServiceError(
                self.breaker.name,
                f"{self.breaker.name} temporarily unavailable (circuit open)",
                status_code=503,
            )

        headers = {"Authorization": f"Bearer {make_service_account_token(self.caller)}"}
        try:
            response = httpx.get(
                f"{self.base_url}{path}",
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.RequestError as exc:
            self.breaker.record_failure()
            logger.warning("Call to %s%s failed: %s", self.base_url, path, exc)
            raise UpstreamServiceError(self.breaker.name, f"Failed to contact {self.breaker.name}")

        if response.status_code == 404:
            self.breaker.record_success()
            return None

        if response.status_code != 200:
            self.breaker.record_failure()
            logger.warning(
                "%s%s answered %s", self.base_url, path, response.status_code
            )
            raise UpstreamServiceError(self.breaker.name, f"{self.breaker.name} returned an error")

        self.breaker.record_success()
        return response.json()
