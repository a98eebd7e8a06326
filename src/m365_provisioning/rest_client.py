from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

import httpx

from .audit import JsonAuditLogger

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 503, 504)
NEXT_LINK_KEYS = ("@odata.nextLink", "odata.nextLink")


class SupportsToken(Protocol):
    def acquire_token(self, scopes: Iterable[str]) -> str: ...


def odata_quote(value: str) -> str:
    """Render ``value`` as an OData string literal."""
    return "'" + value.replace("'", "''") + "'"


class RestClient:
    """Tenant-scoped REST client for one Microsoft 365 service, with retry and logging.

    The same client serves Microsoft Graph, SharePoint REST, Power Automate and the
    Dataverse Web API; only the base URL, token audience and default headers differ.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: SupportsToken,
        scopes: Iterable[str],
        audit_logger: JsonAuditLogger,
        tenant_id: str,
        service: str = "graph",
        timeout: float = 30.0,
        max_retries: int = 3,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.scopes = list(scopes)
        self.audit = audit_logger
        self.tenant_id = tenant_id
        self.service = service
        self.timeout = timeout
        self.max_retries = max_retries
        self.default_headers = dict(default_headers or {})
        self.session = httpx.Client(timeout=self.timeout, transport=transport)

    def close(self) -> None:
        self.session.close()

    def url_for(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if not path:
            return self.base_url
        return f"{self.base_url}/{path.lstrip('/')}"

    def _auth_header(self) -> Dict[str, str]:
        token = self.token_provider.acquire_token(self.scopes)
        return {"Authorization": f"Bearer {token}"}

    def request(
        self,
        method: str,
        path: str,
        ok_statuses: Iterable[int] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        url = self.url_for(path)
        ok_statuses = set(ok_statuses)
        headers = dict(self.default_headers)
        headers.update(kwargs.pop("headers", {}) or {})
        headers.update(self._auth_header())
        backoff = 1.0

        for attempt in range(1, self.max_retries + 2):
            response = self.session.request(method, url, headers=headers, **kwargs)
            if response.status_code in RETRYABLE_STATUSES:
                if attempt > self.max_retries:
                    break
                retry_after = self._get_retry_after_seconds(response) or backoff
                self.audit.warning(
                    f"{self.service}_throttled",
                    tenant_id=self.tenant_id,
                    status=response.status_code,
                    retry_after=retry_after,
                    attempt=attempt,
                )
                time.sleep(retry_after)
                backoff = min(backoff * 2, 30)
                continue

            if response.status_code in ok_statuses:
                logger.debug("%s %s returned accepted status %s", method, url, response.status_code)
                return response

            if response.status_code >= 400:
                self.audit.error(
                    f"{self.service}_request_failed",
                    tenant_id=self.tenant_id,
                    method=method,
                    status=response.status_code,
                    url=url,
                    body=response.text,
                )
                response.raise_for_status()

            self.audit.info(
                f"{self.service}_request_succeeded",
                tenant_id=self.tenant_id,
                method=method,
                status=response.status_code,
                url=url,
            )
            return response

        raise RuntimeError(f"Maximum retry attempts exceeded for {self.service} request")

    def _get_retry_after_seconds(self, response: httpx.Response) -> Optional[float]:
        retry_after = response.headers.get("Retry-After")
        if retry_after is None:
            return None
        try:
            return float(retry_after)
        except ValueError:
            return None

    def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return self.request("POST", path, json=json, **kwargs)

    def put(self, path: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return self.request("PUT", path, json=json, **kwargs)

    def patch(self, path: str, json: Any = None, **kwargs: Any) -> httpx.Response:
        return self.request("PATCH", path, json=json, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("DELETE", path, **kwargs)

    def get_json_or_none(self, path: str, **kwargs: Any) -> Optional[Dict[str, Any]]:
        """Fetch a single entity, or ``None`` when it does not exist.

        SharePoint answers a key lookup that matches nothing with 200 and
        ``{"odata.null": true}`` instead of 404.
        """
        response = self.get(path, ok_statuses=(404,), **kwargs)
        if response.status_code == 404:
            return None
        data = response.json()
        if isinstance(data, dict) and data.get("odata.null"):
            return None
        return data

    def iter_collection(
        self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs: Any
    ) -> Iterator[Dict[str, Any]]:
        """Yield every item of an OData collection, following next links."""
        next_path: Optional[str] = path
        while next_path is not None:
            response = self.get(next_path, params=params, **kwargs)
            data = response.json()
            yield from data.get("value", [])
            next_path = next((data[key] for key in NEXT_LINK_KEYS if data.get(key)), None)
            # next links carry the query string already
            params = None

    def list_collection(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> List[Dict[str, Any]]:
        return list(self.iter_collection(path, params=params, **kwargs))
