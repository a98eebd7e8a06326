from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx

from .audit import JsonAuditLogger
from .config import PowerPlatformConfig, RuntimeSettings, SharePointConfig, TenantConfig
from .reconcile import ReconcileSettings
from .rest_client import RestClient, SupportsToken

SHAREPOINT_HEADERS = {
    "Accept": "application/json;odata=nometadata",
    "Content-Type": "application/json;odata=nometadata",
}
DATAVERSE_HEADERS = {
    "Accept": "application/json",
    "OData-MaxVersion": "4.0",
    "OData-Version": "4.0",
}


@dataclass
class TenantExecutionContext:
    """Everything an operation needs to talk to one tenant.

    REST clients are built on first use, so a run that never touches SharePoint does
    not need SharePoint configured.
    """

    tenant: TenantConfig
    token_provider: SupportsToken
    audit: JsonAuditLogger
    settings: RuntimeSettings = field(default_factory=RuntimeSettings)
    correlation_id: Optional[str] = None
    dry_run: bool = False
    transport: Optional[httpx.BaseTransport] = None
    _clients: Dict[str, RestClient] = field(default_factory=dict, repr=False)

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id

    @property
    def reconcile_settings(self) -> ReconcileSettings:
        return ReconcileSettings(
            verify_attempts=self.settings.verify_attempts,
            verify_delay=self.settings.verify_delay,
        )

    def _client(self, key: str, **kwargs) -> RestClient:
        if key not in self._clients:
            self._clients[key] = RestClient(
                token_provider=self.token_provider,
                audit_logger=self.audit,
                tenant_id=self.tenant_id,
                timeout=self.settings.timeout,
                max_retries=self.settings.max_retries,
                transport=self.transport,
                **kwargs,
            )
        return self._clients[key]

    @property
    def graph(self) -> RestClient:
        return self._client(
            "graph",
            base_url=self.tenant.graph_base_url,
            scopes=self.tenant.default_scopes,
            service="graph",
        )

    def sharepoint(self, site_url: Optional[str] = None) -> RestClient:
        if site_url is None:
            if self.tenant.sharepoint is None:
                raise ValueError(f"Tenant {self.tenant_id} has no SharePoint site configured")
            site = self.tenant.sharepoint
        else:
            site = SharePointConfig(site_url=site_url)
        return self._client(
            f"sharepoint:{site.site_url}",
            base_url=f"{site.site_url}/_api",
            scopes=[site.scope],
            service="sharepoint",
            default_headers=SHAREPOINT_HEADERS,
        )

    @property
    def flow(self) -> RestClient:
        platform = self._power_platform()
        return self._client(
            "flow",
            base_url=platform.flows_url,
            scopes=[platform.flow_scope],
            service="flow",
        )

    @property
    def dataverse(self) -> RestClient:
        platform = self._power_platform()
        if not platform.dataverse_api_url or not platform.dataverse_scope:
            raise ValueError(f"Tenant {self.tenant_id} has no dataverse_url configured")
        return self._client(
            "dataverse",
            base_url=platform.dataverse_api_url,
            scopes=[platform.dataverse_scope],
            service="dataverse",
            default_headers=DATAVERSE_HEADERS,
        )

    def _power_platform(self) -> PowerPlatformConfig:
        if self.tenant.power_platform is None:
            raise ValueError(f"Tenant {self.tenant_id} has no power_platform section configured")
        return self.tenant.power_platform

    def close(self) -> None:
        for client in self._clients.values():
            client.close()
        self._clients.clear()
