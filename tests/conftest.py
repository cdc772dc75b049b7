"""
tests/conftest.py

Shared fakes for the catalog sync tests. Nothing here touches the network:
``FakeUpstream`` and ``ScriptedSession`` stand in for ``requests.Session``.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterable
from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest

from app.config import CatalogAPISettings, ExternalHTTPSettings, SyncSettings
from app.connectors.catalog_client import (
    CASE_LISTING_ENDPOINT,
    SYNC_REGISTER_ENDPOINT,
    SYNC_REPORT_ENDPOINT,
    TAXONOMY_ENDPOINT,
    CatalogApiClient,
)
from db.repositories.kv_store import InMemoryKeyValueStore

INVALID_JSON = object()


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if self._payload is INVALID_JSON:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return copy.deepcopy(self._payload)

    @property
    def text(self) -> str:
        return "<html>not json</html>" if self._payload is INVALID_JSON else str(self._payload)


class ScriptedSession:
    """
    Returns queued outcomes in order; exceptions in the queue are raised.
    """

    def __init__(self, outcomes: Iterable[Any]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    def request(self, *, method: str, url: str, json: Any = None, headers: Any = None, timeout: Any = None) -> Any:
        self.calls.append({"method": method, "url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeUpstream:
    """
    Minimal in-memory upstream catalog service.

    ``listings`` maps procedure id to the case ids it lists, served
    ``page_size`` at a time through the paged listing endpoint.
    """

    def __init__(
        self,
        *,
        taxonomy: list[dict[str, Any]],
        listings: dict[str, list[str]],
        details: dict[str, dict[str, Any]] | None = None,
        page_size: int = 2,
    ) -> None:
        self.taxonomy = taxonomy
        self.listings = listings
        self.details = details or {}
        self.page_size = page_size
        self.failing_listings: set[str] = set()
        self.failing_details: set[str] = set()
        self.taxonomy_fails = False
        self.detail_calls: list[str] = []
        self.listing_calls: list[tuple[str, int]] = []
        self.reports: list[dict[str, Any]] = []
        self.registrations: list[dict[str, Any]] = []
        self.on_detail: Callable[[str], None] | None = None

    def request(self, *, method: str, url: str, json: Any = None, headers: Any = None, timeout: Any = None) -> Any:
        parts = urlsplit(url)
        path = parts.path
        body = json or {}

        if path == TAXONOMY_ENDPOINT:
            if self.taxonomy_fails:
                return FakeResponse(503, {"error": "taxonomy unavailable"})
            return FakeResponse(200, {"success": True, "data": self.taxonomy})

        if path == CASE_LISTING_ENDPOINT:
            procedure_id = str(body["procedureIds"][0])
            page = int(body["count"])
            self.listing_calls.append((procedure_id, page))
            if procedure_id in self.failing_listings:
                return FakeResponse(500, {"error": "listing exploded"})
            ids = self.listings.get(procedure_id, [])
            chunk = ids[(page - 1) * self.page_size : page * self.page_size]
            return FakeResponse(200, {"success": True, "data": [{"id": case_id} for case_id in chunk]})

        if path.startswith(f"{CASE_LISTING_ENDPOINT}/"):
            case_id = path.rsplit("/", 1)[1]
            self.detail_calls.append(case_id)
            if self.on_detail is not None:
                self.on_detail(case_id)
            if case_id in self.failing_details:
                return FakeResponse(500, {"error": f"case {case_id} missing"})
            detail = self.details.get(case_id) or {
                "id": case_id,
                "procedureIds": [body["procedureIds"][0]] if body.get("procedureIds") else [],
                "caseDetails": [{"seoSuffixUrl": f"case-{case_id}"}],
                "photoSets": [{"type": "before", "photos": [{"url": f"https://cdn.test/{case_id}.jpg"}]}],
            }
            return FakeResponse(200, {"success": True, "data": [detail]})

        if path == SYNC_REGISTER_ENDPOINT:
            self.registrations.append({"query": parse_qs(parts.query), "body": body, "headers": headers})
            return FakeResponse(200, {"success": True, "data": {"syncJob": {"id": 77, "status": "PENDING"}}})

        if path == SYNC_REPORT_ENDPOINT:
            self.reports.append(body)
            return FakeResponse(200, {"success": True, "data": {"received": True}})

        return FakeResponse(404, {"error": f"unknown path {path}"})


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def build_taxonomy(case_counts: dict[str, int]) -> list[dict[str, Any]]:
    """
    One category holding a child procedure per entry of ``case_counts``.
    """

    return [
        {
            "name": "Body",
            "slugName": "body",
            "ids": [],
            "procedures": [
                {
                    "name": f"Procedure {procedure_id}",
                    "slugName": f"procedure-{procedure_id}",
                    "ids": [procedure_id],
                    "totalCase": count,
                    "nudity": False,
                }
                for procedure_id, count in case_counts.items()
            ],
        }
    ]


@pytest.fixture()
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture()
def http_settings() -> ExternalHTTPSettings:
    return ExternalHTTPSettings(
        timeout_seconds=5.0,
        max_attempts=3,
        backoff_initial_seconds=1.0,
        backoff_multiplier=2.0,
        backoff_max_seconds=10.0,
    )


@pytest.fixture()
def api_settings() -> CatalogAPISettings:
    return CatalogAPISettings(
        base_url="https://upstream.test",
        api_tokens=("token-1",),
        website_property_ids=(42,),
        listing_cache_ttl_seconds=0,
        site_url="https://clinic.test",
    )


@pytest.fixture()
def sync_settings() -> SyncSettings:
    return SyncSettings(
        batch_size=2,
        time_limit_seconds=10_000.0,
        memory_limit_mb=100_000.0,
        max_listing_pages=100,
        lock_ttl_seconds=3600,
        delete_orphans=True,
        report_upstream=True,
        history_size=20,
    )


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def make_client(
    store: InMemoryKeyValueStore,
    api_settings: CatalogAPISettings,
    http_settings: ExternalHTTPSettings,
    sleeps: list[float],
) -> Callable[..., CatalogApiClient]:
    def _factory(session: Any, **overrides: Any) -> CatalogApiClient:
        return CatalogApiClient(
            settings=overrides.get("settings", api_settings),
            http_settings=overrides.get("http_settings", http_settings),
            store=overrides.get("store", store),
            session=session,
            sleep=sleeps.append,
            clock=overrides.get("clock", FakeClock()),
        )

    return _factory
