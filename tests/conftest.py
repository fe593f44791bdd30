"""Shared fixtures: an in-memory Meevo served through httpx.MockTransport."""

import re
from typing import Dict, Iterable, List, Optional

import httpx
import pytest

from meevo import MeevoClient

AUTH_URL = "https://meevo.test/oauth2/token"
API_URL = "https://meevo.test/publicapi/v1"
TENANT_ID = "200507"
LOCATION_ID = "201664"

_DETAIL_PATH = re.compile(r"/client/([^/]+)$")
_SERVICES_PATH = re.compile(r"/book/client/([^/]+)/services$")


def make_client(
    client_id: str,
    first: str = "Test",
    last: str = "Client",
    phone: Optional[str] = None,
    email: Optional[str] = None,
    guardian_id: Optional[str] = None,
    is_minor: bool = False,
) -> dict:
    """Customer record in Meevo's camelCase shape."""
    return {
        "clientId": client_id,
        "firstName": first,
        "lastName": last,
        "primaryPhoneNumber": phone,
        "emailAddress": email,
        "guardianId": guardian_id,
        "isMinor": is_minor,
    }


def make_service(
    appointment_id: str,
    start: str,
    cancelled: bool = False,
    end: Optional[str] = None,
) -> dict:
    return {
        "appointmentId": appointment_id,
        "appointmentServiceId": f"{appointment_id}-svc",
        "startTime": start,
        "servicingEndTime": end,
        "serviceId": "svc-cut",
        "employeeId": "emp-7",
        "concurrencyCheckDigits": "00A1",
        "isCancelled": cancelled,
    }


class FakeMeevo:
    """Token, listing, detail and booked-services endpoints backed by dicts."""

    def __init__(self):
        self.pages: Dict[int, List[dict]] = {}
        self.details: Dict[str, dict] = {}
        self.services: Dict[str, List[dict]] = {}
        self.failing_pages = set()
        self.failing_details = set()
        self.failing_services = set()
        self.token_status = 200
        self.token_body: dict = {"access_token": "tok-1", "expires_in": 3600}
        self.token_requests = 0
        self.page_requests: List[int] = []
        self.detail_requests: List[str] = []
        self.requests: List[httpx.Request] = []

    # -- seeding --

    def add(self, page: int, *clients: dict, with_detail: bool = True) -> None:
        self.pages.setdefault(page, []).extend(clients)
        if with_detail:
            for c in clients:
                self.details[c["clientId"]] = c

    def fill(self, pages: Iterable[int]) -> None:
        """One phone-bearing filler customer per page."""
        for p in pages:
            self.add(p, make_client(f"filler-{p}", phone=f"480555{p:04d}"))

    # -- transport --

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/oauth2/token"):
            self.token_requests += 1
            if self.token_status >= 400:
                return httpx.Response(self.token_status, json={"error": {"message": "invalid_client"}})
            return httpx.Response(200, json=self.token_body)

        if path.endswith("/clients"):
            page = int(request.url.params["PageNumber"])
            self.page_requests.append(page)
            if page in self.failing_pages:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"data": self.pages.get(page, [])})

        m = _SERVICES_PATH.search(path)
        if m:
            client_id = m.group(1)
            if client_id in self.failing_services:
                return httpx.Response(500, json={"error": {"message": "boom"}})
            return httpx.Response(200, json={"data": self.services.get(client_id, [])})

        m = _DETAIL_PATH.search(path)
        if m:
            client_id = m.group(1)
            self.detail_requests.append(client_id)
            if client_id in self.failing_details:
                return httpx.Response(503, json={"error": {"message": "unavailable"}})
            detail = self.details.get(client_id)
            if detail is None:
                return httpx.Response(404, json={"error": {"message": "not found"}})
            return httpx.Response(200, json={"data": detail})

        return httpx.Response(404)


@pytest.fixture
def fake():
    return FakeMeevo()


@pytest.fixture
def http(fake):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake.handler))


@pytest.fixture
def meevo(http):
    return MeevoClient(http, "test-token", API_URL, TENANT_ID, LOCATION_ID)
