"""EMD — Samsara GPS Verification Source.

Looks up current truck locations and compares them to the scheduled job
coordinates. Jobs that cannot be verified are reported as "unknown"; the
``has_tracking`` flag tells the GPS rules whether the truck is mapped at all.
"""

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from emd.config import settings
from emd.models.job_models import JobSnapshot, VerificationData, VerificationStatus
from emd.core.logging import get_logger

logger = get_logger("samsara.client")

EARTH_RADIUS_MILES = 3959
SPEED_THRESHOLD_MPH = 0.0


class SamsaraAPIError(Exception):
    """Raised when the Samsara API returns an error."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates, in miles."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class SamsaraVerificationSource:
    """Async client for vehicle locations plus per-job verification."""

    def __init__(
        self,
        api_token: str | None = None,
        api_url: str | None = None,
        truck_mapping: Mapping[str, str] | None = None,
        distance_threshold_miles: float | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_token = api_token or settings.samsara_api_token
        self.api_url = (api_url or settings.samsara_api_url).rstrip("/")
        self.truck_mapping = dict(
            truck_mapping if truck_mapping is not None else settings.samsara_truck_mapping
        )
        self.distance_threshold_miles = (
            distance_threshold_miles
            if distance_threshold_miles is not None
            else settings.gps_distance_threshold_miles
        )
        self.timeout = timeout or settings.verification_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.api_token}"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Locations ──

    async def get_vehicle_locations(
        self, vehicle_ids: Iterable[str]
    ) -> Dict[str, Dict[str, Any]]:
        """Current location per Samsara vehicle id."""
        ids = sorted(set(vehicle_ids))
        if not ids:
            return {}
        client = await self._get_client()
        try:
            resp = await client.get(
                f"{self.api_url}/fleet/vehicles/locations",
                params={"vehicleIds": ",".join(ids)},
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SamsaraAPIError(
                f"Samsara returned {e.response.status_code}", e.response.status_code
            ) from e
        except httpx.RequestError as e:
            raise SamsaraAPIError(f"Request to Samsara failed: {e}") from e

        locations: Dict[str, Dict[str, Any]] = {}
        for vehicle in resp.json().get("data", []):
            location = vehicle.get("location") or {}
            if location.get("latitude") is None or location.get("longitude") is None:
                continue
            locations[str(vehicle.get("id"))] = location
        logger.info(f"Fetched {len(locations)}/{len(ids)} vehicle locations")
        return locations

    # ── Verification ──

    async def fetch_verification(
        self, jobs: List[JobSnapshot]
    ) -> Dict[str, VerificationData]:
        """Verify every job that has a truck assigned."""
        assigned = [j for j in jobs if j.truck_id]
        vehicle_ids = [self.truck_mapping[j.truck_id] for j in assigned if j.truck_id in self.truck_mapping]
        locations = await self.get_vehicle_locations(vehicle_ids)
        return {j.entity_id: self.verify_job(j, locations) for j in assigned}

    def verify_job(
        self, job: JobSnapshot, locations: Mapping[str, Dict[str, Any]]
    ) -> VerificationData:
        vehicle_id = self.truck_mapping.get(job.truck_id or "")
        unknown = VerificationData(
            entity_id=job.entity_id,
            truck_id=job.truck_id,
            status=VerificationStatus.UNKNOWN,
            has_tracking=vehicle_id is not None,
        )
        location = locations.get(vehicle_id) if vehicle_id else None
        if location is None or job.latitude is None or job.longitude is None:
            return unknown

        distance = haversine_miles(
            job.latitude, job.longitude, location["latitude"], location["longitude"]
        )
        if distance > self.distance_threshold_miles:
            status = VerificationStatus.OFF_SCHEDULE
        elif (location.get("speed") or 0) > SPEED_THRESHOLD_MPH:
            status = VerificationStatus.VERIFIED
        else:
            status = VerificationStatus.IDLE

        return VerificationData(
            entity_id=job.entity_id,
            truck_id=job.truck_id,
            status=status,
            distance_miles=round(distance, 2),
            has_tracking=True,
        )
