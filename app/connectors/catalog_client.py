"""
app/connectors/catalog_client.py

Client for the upstream gallery catalog service.

Every upstream call in the project goes through ``CatalogApiClient.request``,
which layers the response cache on top of the retrying transport in
``BaseApiClient``. Typed helpers below wrap the individual endpoints.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import requests

from app.config import CatalogAPISettings, ExternalHTTPSettings
from app.connectors.base import ApiError, ApiErrorKind, ApiResponse, BaseApiClient
from app.connectors.response_cache import CachePolicy, ResponseCache, build_cache_key
from db.repositories.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

TAXONOMY_ENDPOINT = "/api/plugin/combine/sidebar"
CASE_LISTING_ENDPOINT = "/api/plugin/combine/cases"
CASE_DETAIL_ENDPOINT = "/api/plugin/combine/cases/{case_id}"
SYNC_REGISTER_ENDPOINT = "/api/plugin/v2/sync/register"
SYNC_REPORT_ENDPOINT = "/api/plugin/v2/sync/report"

UPSTREAM_SYNC_STATUSES = frozenset({"IN_PROGRESS", "SUCCESS", "FAILED", "PARTIAL", "TIMEOUT"})


class CatalogApiClient(BaseApiClient):
    """
    Single point of upstream HTTP communication for the sync engine.
    """

    def __init__(
        self,
        *,
        settings: CatalogAPISettings,
        http_settings: ExternalHTTPSettings,
        store: KeyValueStore,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {}
        if sleep is not None:
            kwargs["sleep"] = sleep
        if clock is not None:
            kwargs["clock"] = clock
        super().__init__(
            base_url=settings.base_url,
            http_settings=http_settings,
            session=session,
            **kwargs,
        )
        self._settings = settings
        self._cache = ResponseCache(store)

    def request(
        self,
        endpoint: str,
        method: str = "POST",
        body: dict[str, Any] | None = None,
        cache_policy: CachePolicy | str = CachePolicy(),
        *,
        metric_key: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> ApiResponse:
        """
        Execute one upstream call, consulting the response cache first.

        A cache hit skips the network entirely. On a miss the live response
        is stored only when it decoded cleanly and the policy has a TTL.
        """

        policy = CachePolicy.parse(cache_policy) if isinstance(cache_policy, str) else cache_policy
        metrics_name = metric_key or endpoint
        cache_key = build_cache_key(method, endpoint, body)

        if policy.enabled:
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._endpoint_metrics(metrics_name).record(duration_seconds=0.0, cache_hit=True)
                logger.debug("Catalog cache hit endpoint=%s", endpoint)
                return ApiResponse(endpoint=endpoint, status_code=200, data=cached, from_cache=True)

        response = self._send_json(
            endpoint=endpoint,
            method=method,
            body=body,
            headers=headers,
            metric_key=metrics_name,
        )
        if not (isinstance(response.data, dict) and response.data.get("success") is False):
            self._cache.put(cache_key, response.data, policy)
        return response

    def clear_cache(self) -> int:
        return self._cache.clear()

    # ------------------------------------------------------------------
    # Catalog endpoints
    # ------------------------------------------------------------------

    def fetch_taxonomy(self) -> list[dict[str, Any]]:
        """
        Fetch the full category/procedure tree. Always live.
        """

        response = self.request(
            TAXONOMY_ENDPOINT,
            body={"apiTokens": self._require_tokens(TAXONOMY_ENDPOINT)},
            cache_policy=CachePolicy.no_cache(),
        )
        data = self._unwrap_success(response)
        if not isinstance(data, list):
            raise ApiError(ApiErrorKind.APPLICATION, TAXONOMY_ENDPOINT, "taxonomy data is not a list.")
        return data

    def fetch_case_listing_page(self, procedure_id: str, page: int) -> list[Any]:
        """
        Fetch one page of case listing rows for a procedure.

        Rows are returned raw; they may be bare ids or objects with an ``id``.
        """

        body = {
            "apiTokens": self._require_tokens(CASE_LISTING_ENDPOINT),
            "websitePropertyIds": list(self._settings.website_property_ids),
            "procedureIds": [_as_upstream_id(procedure_id)],
            "count": page,
        }
        response = self.request(
            CASE_LISTING_ENDPOINT,
            body=body,
            cache_policy=CachePolicy.ttl(self._settings.listing_cache_ttl_seconds),
        )
        data = self._unwrap_success(response, allow_empty=True)
        if data is None:
            return []
        if isinstance(data, dict):
            return list(data.values())
        if not isinstance(data, list):
            raise ApiError(ApiErrorKind.APPLICATION, CASE_LISTING_ENDPOINT, "listing data is not a list.")
        return data

    def fetch_case_detail(self, case_id: str, procedure_id: str | None = None) -> dict[str, Any]:
        """
        Fetch one case's full record. Always live.
        """

        endpoint = CASE_DETAIL_ENDPOINT.format(case_id=case_id)
        body: dict[str, Any] = {
            "apiTokens": self._require_tokens(endpoint),
            "websitePropertyIds": list(self._settings.website_property_ids),
            "procedureIds": [_as_upstream_id(procedure_id)] if procedure_id else [],
        }
        response = self.request(
            endpoint,
            body=body,
            cache_policy=CachePolicy.no_cache(),
            metric_key=CASE_DETAIL_ENDPOINT,
        )
        data = self._unwrap_success(response)
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            raise ApiError(ApiErrorKind.APPLICATION, endpoint, "case detail is not an object.")
        return data

    # ------------------------------------------------------------------
    # Sync job reporting
    # ------------------------------------------------------------------

    def register_sync(self, sync_type: str = "MANUAL") -> dict[str, Any]:
        """
        Register a sync job upstream and return the ``syncJob`` record.
        """

        body = {"url": self._require_site_url(SYNC_REGISTER_ENDPOINT), "syncType": sync_type.upper()}
        response = self.request(
            self._with_property_query(SYNC_REGISTER_ENDPOINT),
            body=body,
            headers=self._bearer_headers(SYNC_REGISTER_ENDPOINT),
            metric_key=SYNC_REGISTER_ENDPOINT,
        )
        data = response.data.get("data") if isinstance(response.data, dict) else None
        sync_job = data.get("syncJob") if isinstance(data, dict) else None
        if not isinstance(sync_job, dict):
            raise ApiError(ApiErrorKind.APPLICATION, SYNC_REGISTER_ENDPOINT, "no syncJob returned.")
        return sync_job

    def report_sync(
        self,
        status: str,
        *,
        cases_synced: int = 0,
        message: str = "",
        error_log: str = "",
    ) -> dict[str, Any]:
        """
        Report a sync job status transition upstream.
        """

        normalized = status.upper()
        if normalized not in UPSTREAM_SYNC_STATUSES:
            raise ValueError(f"Invalid upstream sync status: {status!r}")

        body: dict[str, Any] = {"url": self._require_site_url(SYNC_REPORT_ENDPOINT), "status": normalized}
        if cases_synced > 0:
            body["casesSynced"] = cases_synced
        if message:
            body["message"] = message
        if error_log:
            body["errorLog"] = error_log

        response = self.request(
            self._with_property_query(SYNC_REPORT_ENDPOINT),
            body=body,
            headers=self._bearer_headers(SYNC_REPORT_ENDPOINT),
            metric_key=SYNC_REPORT_ENDPOINT,
        )
        data = response.data.get("data") if isinstance(response.data, dict) else None
        if not isinstance(data, dict):
            raise ApiError(ApiErrorKind.APPLICATION, SYNC_REPORT_ENDPOINT, "invalid report response.")
        return data

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_tokens(self, endpoint: str) -> list[str]:
        if not self._settings.api_tokens:
            raise ApiError(ApiErrorKind.CONFIGURATION, endpoint, "no API tokens configured.")
        return list(self._settings.api_tokens)

    def _require_site_url(self, endpoint: str) -> str:
        if not self._settings.site_url:
            raise ApiError(ApiErrorKind.CONFIGURATION, endpoint, "CATALOG_SITE_URL is not configured.")
        return self._settings.site_url

    def _bearer_headers(self, endpoint: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._require_tokens(endpoint)[0]}"}

    def _with_property_query(self, endpoint: str) -> str:
        if not self._settings.website_property_ids:
            raise ApiError(ApiErrorKind.CONFIGURATION, endpoint, "no website property id configured.")
        return f"{endpoint}?websitePropertyId={self._settings.website_property_ids[0]}"

    @staticmethod
    def _unwrap_success(response: ApiResponse, *, allow_empty: bool = False) -> Any:
        """
        Validate the ``{"success": ..., "data": ...}`` envelope and return ``data``.
        """

        payload = response.data
        if not isinstance(payload, dict):
            raise ApiError(ApiErrorKind.APPLICATION, response.endpoint, "response envelope is not an object.")
        if not payload.get("success"):
            if allow_empty and "success" in payload and not payload.get("data"):
                return None
            message = payload.get("message") or payload.get("error") or "upstream reported failure."
            raise ApiError(ApiErrorKind.APPLICATION, response.endpoint, str(message))
        data = payload.get("data")
        if data is None and not allow_empty:
            raise ApiError(ApiErrorKind.APPLICATION, response.endpoint, "response has no data.")
        return data


def _as_upstream_id(value: str | None) -> int | str | None:
    """
    Upstream ids are numeric; send them as integers whenever they parse.
    """

    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return value
