from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal, Mapping

import httpx

from listing_sync.core.errors import SyncError, TransportFailure, UpstreamRejection
from listing_sync.upstream.rate_limit import FixedWindowRateLimiter
from listing_sync.upstream.schemas import LOOKUP_TYPES, PropertyFilter, PropertyPage, UpstreamProperty

log = logging.getLogger(__name__)

HttpMethod = Literal["GET", "POST"]


def _is_json_response(resp: httpx.Response) -> bool:
    ct = (resp.headers.get("content-type") or "").lower()
    return "application/json" in ct or ct.endswith("+json")


def _cap_text(s: str, *, max_chars: int) -> str:
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + f"...(truncated, {len(s)} chars)"


class UpstreamClient:
    """
    Authenticated client for the upstream CRM API.

    - Every call waits on the injected rate limiter before going out.
    - Does NOT retry; the orchestrator owns retry policy.
    - Non-2xx raises UpstreamRejection, network-level errors raise TransportFailure.
    """

    def __init__(
        self,
        *,
        auth_token: str,
        base_url: str,
        rate_limiter: FixedWindowRateLimiter,
        http: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        max_error_body_chars: int = 2_000,
        lookup_pause_seconds: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._limiter = rate_limiter
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._max_body = max_error_body_chars
        self._lookup_pause = lookup_pause_seconds
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        h = {"Content-Type": "application/json", "authorization": self._auth_token}
        if extra:
            h.update(extra)
        return h

    async def _request_json(
        self,
        *,
        method: HttpMethod,
        url: str,
        headers: Mapping[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self._limiter.acquire()

        try:
            resp = await self._http.request(method=method, url=url, headers=self._headers(headers), json=json_body)
        except httpx.TimeoutException as e:
            raise TransportFailure(f"Timeout calling upstream {method} {url}", detail={"error": str(e)}) from e
        except httpx.RequestError as e:
            # DNS errors, connection refused, TLS, etc.
            raise TransportFailure(
                f"Could not reach upstream {method} {url}: {type(e).__name__}", detail={"error": str(e)}
            ) from e

        if not 200 <= resp.status_code < 300:
            raise UpstreamRejection(
                f"Upstream HTTP {resp.status_code} for {method} {url}",
                upstream_status=resp.status_code,
                detail={"body": _cap_text(resp.text, max_chars=self._max_body)},
            )

        if not _is_json_response(resp):
            raise UpstreamRejection(
                f"Upstream returned non-JSON response for {method} {url}",
                upstream_status=resp.status_code,
                detail={"content_type": resp.headers.get("content-type"), "body": _cap_text(resp.text, max_chars=self._max_body)},
            )
        try:
            parsed = resp.json()
        except ValueError as e:
            raise UpstreamRejection(
                f"Upstream returned invalid JSON for {method} {url}", upstream_status=resp.status_code
            ) from e

        return parsed if isinstance(parsed, dict) else {"success": True, "data": parsed}

    async def test_connection(self) -> bool:
        try:
            data = await self._request_json(method="GET", url=f"{self.base_url}/api/properties")
        except SyncError as e:
            log.warning("upstream connection test failed: %s", e)
            return False
        return data.get("success") is True

    async def fetch_properties(
        self,
        flt: PropertyFilter | None = None,
        *,
        detailed: bool = True,
        page_url: str | None = None,
    ) -> PropertyPage:
        flt = flt or PropertyFilter()
        url = page_url or f"{self.base_url}/api/properties"
        data = await self._request_json(
            method="POST",
            url=url,
            headers={"Details": "Full" if detailed else "Basic"},
            json_body=flt.to_body(),
        )

        records = data.get("data") or []
        if not isinstance(records, list):
            records = []
        total = data.get("total")
        return PropertyPage(
            records=records,
            success=data.get("success") is True,
            total=int(total) if isinstance(total, (int, float)) else len(records),
            next_page=data.get("nextPage") or None,
            error=data.get("error"),
            code=data.get("code"),
        )

    async def fetch_property_by_id(self, upstream_id: int) -> UpstreamProperty | None:
        data = await self._request_json(
            method="GET",
            url=f"{self.base_url}/api/properties/{upstream_id}",
            headers={"Details": "Full"},
        )
        if data.get("success") is not True or not isinstance(data.get("data"), dict):
            return None
        return UpstreamProperty.from_payload(data["data"])

    async def fetch_lookup(self, lookup_type: str, language_id: int = 4) -> list[dict[str, Any]]:
        data = await self._request_json(
            method="GET",
            url=f"{self.base_url}/api/lookups/{lookup_type}",
            headers={"Language": str(language_id)},
        )
        if data.get("success") is not True:
            return []
        entries = data.get("data") or []
        return [e for e in entries if isinstance(e, dict)] if isinstance(entries, list) else []

    async def fetch_all_lookups(self, language_id: int = 4) -> dict[str, list[dict[str, Any]]]:
        lookups: dict[str, list[dict[str, Any]]] = {}
        for i, lookup_type in enumerate(LOOKUP_TYPES):
            if i:
                # small gap between calls so we don't burst the upstream
                await self._sleep(self._lookup_pause)
            try:
                lookups[lookup_type] = await self.fetch_lookup(lookup_type, language_id)
            except SyncError as e:
                log.warning("lookup fetch failed type=%s: %s", lookup_type, e)
                lookups[lookup_type] = []
        return lookups


# (auth_token, base_url) -> client; callers own the returned client and close it
ClientFactory = Callable[[str, str], UpstreamClient]


def client_factory(rate_limiter: FixedWindowRateLimiter, *, timeout_seconds: float = 30.0) -> ClientFactory:
    def _build(auth_token: str, base_url: str) -> UpstreamClient:
        return UpstreamClient(
            auth_token=auth_token,
            base_url=base_url,
            rate_limiter=rate_limiter,
            timeout_seconds=timeout_seconds,
        )

    return _build
