"""Shared fixtures: a fresh store, a stepping clock, and a seeded listing."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from engagement.config import Settings
from engagement.payments import PaymentProofSubmission
from engagement.rating import RatingTrigger
from engagement.service import LISTINGS, EngagementService
from engagement.store import InMemoryStore
from engagement.uploads import HttpUploader


CLIENT_ID = "client-ana"
PROVIDER_ID = "provider-ben"
OTHER_CLIENT_ID = "client-cara"
LISTING_ID = "listing-aircon"
UPLOAD_URL = "https://uploads.test/api/upload"


class SteppingClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        now = self.current
        self.current = self.current + self.step
        return now


def upload_transport(requests: list) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"secure_url": f"https://cdn.test/proof-{len(requests)}.png"})

    return httpx.MockTransport(handler)


@pytest.fixture
def settings():
    return Settings(_env_file=None, upload_url=UPLOAD_URL)


@pytest.fixture
def clock():
    return SteppingClock(datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def listing(store):
    store.set(LISTINGS, LISTING_ID, {
        "providerId": PROVIDER_ID,
        "title": "Aircon Cleaning",
        "price": Decimal("500"),
        "isReserved": False,
        "reservedBy": None,
        "active": True,
        "totalCompletions": 0,
    })
    return store.get(LISTINGS, LISTING_ID)


@pytest.fixture
def service(store, settings, clock):
    return EngagementService(store, rating=RatingTrigger(store, clock=clock), settings=settings, clock=clock)


@pytest.fixture
def upload_requests():
    return []


@pytest.fixture
def uploader(upload_requests):
    return HttpUploader(UPLOAD_URL, client=httpx.Client(transport=upload_transport(upload_requests)))


@pytest.fixture
def payments(service, uploader):
    return PaymentProofSubmission(service, uploader=uploader)
