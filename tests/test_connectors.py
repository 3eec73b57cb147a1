"""Tests for the FileMaker and Samsara connectors over a mocked transport."""

import json
from datetime import date

import httpx
import pytest

from emd.connectors.filemaker.client import FileMakerAPIError, FileMakerClient
from emd.connectors.filemaker.endpoints import FileMakerJobSource, build_job_query
from emd.connectors.samsara.client import (
    SamsaraAPIError,
    SamsaraVerificationSource,
    haversine_miles,
)
from emd.models.job_models import ComparisonWindow, VerificationStatus

from conftest import make_job

WINDOW = ComparisonWindow(start=date(2026, 3, 1), end=date(2026, 3, 2))


def fm_record(job_id, status="Entered", job_type="Delivery"):
    return {
        "recordId": job_id,
        "fieldData": {
            "_kp_job_id": job_id,
            "job_date": "03/02/2026",
            "job_status": status,
            "job_type": job_type,
            "_kf_trucks_id": "77",
        },
    }


class FileMakerStub:
    """Minimal Data API: one session endpoint and a paged _find."""

    def __init__(self, records, page_error=None):
        self.records = records
        self.page_error = page_error
        self.logins = 0
        self.finds = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/sessions"):
            self.logins += 1
            return httpx.Response(200, json={"response": {"token": f"tok-{self.logins}"}})
        if path.endswith("/_find"):
            if self.page_error:
                return httpx.Response(500, json={"messages": [self.page_error]})
            body = json.loads(request.content)
            self.finds.append(body)
            start = body["offset"] - 1
            page = self.records[start : start + body["limit"]]
            return httpx.Response(
                200,
                json={
                    "response": {
                        "data": page,
                        "dataInfo": {"foundCount": len(self.records)},
                    }
                },
            )
        return httpx.Response(404)


def fm_client(stub) -> FileMakerClient:
    return FileMakerClient(
        host="fm.example.com",
        database="Dispatch",
        layout="jobs_api",
        username="api",
        password="secret",
        timeout=5,
        transport=httpx.MockTransport(stub),
    )


def test_job_query_uses_date_range_and_type_requests() -> None:
    query = build_job_query(WINDOW, ["Delivery", "Pickup"])
    assert query == [
        {"job_date": "03/01/2026...03/02/2026", "job_type": "==Delivery"},
        {"job_date": "03/01/2026...03/02/2026", "job_type": "==Pickup"},
    ]


@pytest.mark.asyncio()
async def test_fetch_jobs_paginates_and_filters() -> None:
    stub = FileMakerStub(
        [
            fm_record("1"),
            fm_record("2", status="DELETED"),
            fm_record("3", job_type="Inspection"),
            fm_record("4", status=""),
            fm_record("5", status="Completed"),
        ]
    )
    source = FileMakerJobSource(fm_client(stub), ["Delivery"], batch_size=2, timezone_name="UTC")

    jobs = await source.fetch_jobs(WINDOW)

    assert [j.entity_id for j in jobs] == ["1", "5"]
    assert [f["offset"] for f in stub.finds] == [1, 3, 5]
    assert stub.logins == 1


@pytest.mark.asyncio()
async def test_no_records_is_an_empty_result() -> None:
    stub = FileMakerStub([], page_error={"code": "401", "message": "No records match the request"})
    jobs = await FileMakerJobSource(fm_client(stub), timezone_name="UTC").fetch_jobs(WINDOW)
    assert jobs == []


@pytest.mark.asyncio()
async def test_server_error_raises() -> None:
    stub = FileMakerStub([], page_error={"code": "802", "message": "Unable to open file"})
    with pytest.raises(FileMakerAPIError) as exc:
        await fm_client(stub).find([{"job_date": "*"}])
    assert exc.value.status_code == 500
    assert exc.value.error_code == "802"


def samsara_source(handler, mapping=None) -> SamsaraVerificationSource:
    return SamsaraVerificationSource(
        api_token="token",
        api_url="https://api.samsara.test",
        truck_mapping=mapping if mapping is not None else {"T1": "281474"},
        distance_threshold_miles=5.0,
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def location_handler(latitude, longitude, speed):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer token"
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "id": "281474",
                        "location": {
                            "latitude": latitude,
                            "longitude": longitude,
                            "speed": speed,
                        },
                    }
                ]
            },
        )

    return handler


def test_haversine_known_distance() -> None:
    # Chicago Loop to O'Hare, roughly 16 miles.
    assert haversine_miles(41.8781, -87.6298, 41.9742, -87.9073) == pytest.approx(15.9, abs=1.0)


@pytest.mark.asyncio()
async def test_far_truck_is_off_schedule() -> None:
    source = samsara_source(location_handler(41.9742, -87.9073, 35))
    job = make_job("J1", latitude=41.8781, longitude=-87.6298)

    result = await source.fetch_verification([job])

    assert result["J1"].status == VerificationStatus.OFF_SCHEDULE
    assert result["J1"].distance_miles > 5


@pytest.mark.asyncio()
async def test_close_moving_truck_is_verified_and_parked_truck_idle() -> None:
    job = make_job("J1", latitude=41.8781, longitude=-87.6298)

    moving = await samsara_source(location_handler(41.89, -87.63, 20)).fetch_verification([job])
    parked = await samsara_source(location_handler(41.89, -87.63, 0)).fetch_verification([job])

    assert moving["J1"].status == VerificationStatus.VERIFIED
    assert parked["J1"].status == VerificationStatus.IDLE


@pytest.mark.asyncio()
async def test_unmapped_truck_is_unknown_without_tracking() -> None:
    source = samsara_source(location_handler(0, 0, 0), mapping={})
    result = await source.fetch_verification([make_job("J1", latitude=41.0, longitude=-87.0)])
    assert result["J1"].status == VerificationStatus.UNKNOWN
    assert result["J1"].has_tracking is False


@pytest.mark.asyncio()
async def test_samsara_error_raises() -> None:
    source = samsara_source(lambda request: httpx.Response(503))
    with pytest.raises(SamsaraAPIError):
        await source.fetch_verification([make_job("J1", latitude=41.0, longitude=-87.0)])
