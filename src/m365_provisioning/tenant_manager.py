from __future__ import annotations

import logging
import uuid
from typing import Callable, Dict, List, Optional

import httpx

from .audit import JsonAuditLogger
from .auth import TokenProvider
from .config import ProvisioningConfig, TenantConfig
from .context import TenantExecutionContext
from .errors import TenantNotConfiguredError
from .manifest import ProvisioningManifest
from .operations import TenantOperations
from .preflight import PreflightResult, run_preflight
from .provisioner import ProvisioningReport
from .rest_client import SupportsToken

logger = logging.getLogger(__name__)


class TenantManager:
    """Central orchestrator for tenant onboarding, validation, and operations."""

    def __init__(
        self,
        config: ProvisioningConfig,
        audit_logger: Optional[JsonAuditLogger] = None,
        token_provider_factory: Optional[Callable[[TenantConfig], SupportsToken]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config
        self.audit = audit_logger or JsonAuditLogger(log_dir=config.settings.audit_log_dir)
        self._tenant_cache: Dict[str, TenantConfig] = {tenant.tenant_id: tenant for tenant in config.tenants}
        self._token_provider_factory = token_provider_factory or (lambda tenant: TokenProvider(tenant, self.audit))
        self._providers: Dict[str, SupportsToken] = {}
        self.transport = transport

    def get_tenant(self, tenant_id: str) -> TenantConfig:
        tenant = self._tenant_cache.get(tenant_id)
        if not tenant:
            raise TenantNotConfiguredError(tenant_id)
        return tenant

    def onboard_tenant(self, tenant: TenantConfig) -> None:
        self._tenant_cache[tenant.tenant_id] = tenant
        self.audit.info("tenant_onboarded", tenant_id=tenant.tenant_id, display_name=tenant.display_name)

    def offboard_tenant(self, tenant_id: str) -> None:
        self._tenant_cache.pop(tenant_id, None)
        self._providers.pop(tenant_id, None)
        self.audit.info("tenant_offboarded", tenant_id=tenant_id)

    def validate_permissions(self, tenant: TenantConfig) -> None:
        # Declared permissions are recorded only; Graph rejects calls the app is not granted.
        self.audit.info(
            "tenant_validated",
            tenant_id=tenant.tenant_id,
            required_app_roles=tenant.required_application_roles,
            required_delegated_permissions=tenant.required_delegated_permissions,
        )

    def token_provider(self, tenant: TenantConfig) -> SupportsToken:
        if tenant.tenant_id not in self._providers:
            self._providers[tenant.tenant_id] = self._token_provider_factory(tenant)
        return self._providers[tenant.tenant_id]

    def with_context(
        self,
        tenant_id: str,
        correlation_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> TenantExecutionContext:
        tenant = self.get_tenant(tenant_id)
        self.validate_permissions(tenant)
        return TenantExecutionContext(
            tenant=tenant,
            token_provider=self.token_provider(tenant),
            audit=self.audit,
            settings=self.config.settings,
            correlation_id=correlation_id,
            dry_run=dry_run,
            transport=self.transport,
        )

    def run_operation(
        self,
        tenant_id: str,
        operation: Callable[[TenantOperations], object],
        correlation_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> object:
        correlation_id = correlation_id or str(uuid.uuid4())
        context = self.with_context(tenant_id, correlation_id=correlation_id, dry_run=dry_run)
        self.audit.info("operation_started", tenant_id=tenant_id, correlation_id=correlation_id, dry_run=dry_run)
        try:
            result = operation(TenantOperations(context))
        except Exception as exc:
            self.audit.error("operation_failed", tenant_id=tenant_id, correlation_id=correlation_id, error=str(exc))
            raise
        finally:
            context.close()
        self.audit.info("operation_completed", tenant_id=tenant_id, correlation_id=correlation_id)
        return result

    def provision(
        self,
        tenant_id: str,
        manifest: ProvisioningManifest,
        dry_run: bool = False,
        continue_on_error: bool = False,
        correlation_id: Optional[str] = None,
    ) -> ProvisioningReport:
        return self.run_operation(
            tenant_id=tenant_id,
            correlation_id=correlation_id,
            dry_run=dry_run,
            operation=lambda ops: ops.provision(manifest, continue_on_error=continue_on_error),
        )

    def preflight(self, tenant_id: str) -> List[PreflightResult]:
        tenant = self.get_tenant(tenant_id)
        results = run_preflight(tenant, self.token_provider(tenant))
        for result in results:
            log = self.audit.info if result.status.value in ("pass", "skipped") else self.audit.warning
            log("preflight_check", tenant_id=tenant_id, check_id=result.check_id, status=result.status.value)
        return results
