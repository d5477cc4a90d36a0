import os

from common.circuit_breaker import CircuitBreaker
from common.service_client import ServiceClient, UpstreamServiceError

BOOKINGS_SERVICE_URL = os.getenv(
    "BOOKINGS_SERVICE_URL",
    "http://bookings_service:8003",  # Docker internal URL
)

bookings_circuit_breaker = CircuitBreaker("bookings_service", max_failures=3, reset_timeout_seconds=30)


class BookingsClient:
    """
    Fleet-side view of the bookings service.
    """

    def __init__(self, client: ServiceClient):
        self.client = client

    def count_blocking(self, vehicle_id: int) -> int:
        """
        Number of PENDING or CONFIRMED reservations held against a vehicle.

        Raises
        ------
        UpstreamServiceError
            If the bookings service cannot answer; callers must not
            assume zero.
        """
        data = self.client.get_json(f"/api/v1/bookings/vehicles/{vehicle_id}/active-count")
        if data is None or "active_count" not in data:
            raise UpstreamServiceError(
                self.client.breaker.name, "bookings_service returned an unexpected payload"
            )
        return int(data["active_count"])


_bookings_client = BookingsClient(
    ServiceClient("fleet_service", BOOKINGS_SERVICE_URL, bookings_circuit_breaker)
)


def get_bookings_client() -> BookingsClient:
    return _bookings_client
