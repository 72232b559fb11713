import logging
from abc import ABC, abstractmethod
from typing import List, Sequence

import httpx

from seatlock.errors import LockStoreUnavailable, SeatNotFound

logger = logging.getLogger(__name__)


class SeatInventory(ABC):
    """Seat inventory collaborator: knows which seat codes exist on a trip."""

    @abstractmethod
    async def unknown_seats(self, trip_id: str, seat_codes: Sequence[str]) -> List[str]:
        """Return the codes that do not exist on the trip; raise SeatNotFound for an unknown trip."""
        raise NotImplementedError()


class OpenInventory(SeatInventory):
    """Accepts every seat code; validation is left to the booking service."""

    async def unknown_seats(self, trip_id, seat_codes):
        return []


class HttpSeatInventory(SeatInventory):
    """Reads the seat layout from the trip service (``GET /{trip_id}/seats``)."""

    def __init__(self, base_url: str, timeout: float = 2.0, transport: httpx.AsyncBaseTransport = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def unknown_seats(self, trip_id, seat_codes):
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(f"/{trip_id}/seats")
        except httpx.HTTPError as exc:
            logger.error("Seat inventory unreachable for trip %s: %s", trip_id, exc)
            raise LockStoreUnavailable("Seat inventory unavailable") from exc
        if resp.status_code == 404:
            raise SeatNotFound(trip_id)
        if resp.status_code >= 400:
            logger.error("Seat inventory returned %s for trip %s", resp.status_code, trip_id)
            raise LockStoreUnavailable("Seat inventory unavailable")

        # {"success": true, "data": {"trip_id": ..., "seat_map": {"seats": [{"seat_code": ...}]}}}
        data = resp.json().get("data") or {}
        seats = (data.get("seat_map") or {}).get("seats") or []
        known = {seat.get("seat_code") for seat in seats}
        return [code for code in seat_codes if code not in known]
