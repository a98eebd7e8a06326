from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

COMMERCIAL_FLOW_API = "https://api.flow.microsoft.com/providers/Microsoft.ProcessSimple"
COMMERCIAL_FLOW_SCOPE = "https://service.flow.microsoft.com/.default"


class SecretRef(BaseModel):
    """Points at a credential instead of holding it.

    Only environment variables and inline values are read here. A Key Vault
    URI is accepted in configuration so deployments can document where the
    secret lives, but the host must export it before the tenant is used.
    """

    env: Optional[str] = Field(default=None, description="Environment variable holding the secret")
    value: Optional[str] = Field(default=None, description="Literal secret for local test tenants")
    key_vault_secret_uri: Optional[str] = Field(default=None, description="Key Vault secret identifier")

    model_config = ConfigDict(extra="forbid")

    def resolve(self) -> str:
        if self.env:
            secret = os.getenv(self.env)
            if not secret:
                raise ValueError(f"Environment variable {self.env} is not set")
            return secret
        if self.value:
            return self.value
        if self.key_vault_secret_uri:
            raise ValueError(
                f"Key Vault reference {self.key_vault_secret_uri} must be exported to an environment variable"
            )
        raise ValueError("Secret reference is empty")


class ClientSecretAuth(BaseModel):
    type: Literal["client_secret"]
    client_id: str
    client_secret: SecretRef
    authority_host: str = Field(
        default="https://login.microsoftonline.com",
        description="Entra ID login host, e.g. login.microsoftonline.us for GCC High",
    )

    model_config = ConfigDict(extra="forbid")


class CertificateAuth(BaseModel):
    """App-only certificate credential. SharePoint REST rejects client secrets for
    app-only tokens, so tenants that provision SharePoint objects need this one."""

    type: Literal["certificate"]
    client_id: str
    certificate_path: Path
    private_key_path: Optional[Path] = Field(
        default=None,
        description="PEM private key. Defaults to certificate_path for combined PEM files.",
    )
    certificate_password: Optional[SecretRef] = None
    authority_host: str = Field(
        default="https://login.microsoftonline.com",
        description="Entra ID login host, e.g. login.microsoftonline.us for GCC High",
    )

    model_config = ConfigDict(extra="forbid")


class ManagedIdentityAuth(BaseModel):
    type: Literal["managed_identity"]
    client_id: Optional[str] = Field(
        default=None, description="Optional user-assigned managed identity client ID"
    )

    model_config = ConfigDict(extra="forbid")


AuthConfig = Annotated[
    Union[ClientSecretAuth, CertificateAuth, ManagedIdentityAuth],
    Field(discriminator="type"),
]


class SharePointConfig(BaseModel):
    site_url: str = Field(description="Absolute URL of the site to provision, no trailing slash")

    model_config = ConfigDict(extra="forbid")

    @field_validator("site_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        if not value.startswith("https://"):
            raise ValueError("site_url must be an https URL")
        return value.rstrip("/")

    @property
    def scope(self) -> str:
        scheme, _, rest = self.site_url.partition("://")
        host = rest.split("/", 1)[0]
        return f"{scheme}://{host}/.default"


class PowerPlatformConfig(BaseModel):
    environment_id: str
    flow_api_base_url: str = Field(
        default=COMMERCIAL_FLOW_API,
        description="Use gov.api.flow.microsoft.us (or .appsplatform.us) for GCC / GCC High",
    )
    flow_scope: str = COMMERCIAL_FLOW_SCOPE
    dataverse_url: Optional[str] = Field(
        default=None,
        description="Organization URL, e.g. https://org.crm.dynamics.com (.crm9.dynamics.com for GCC)",
    )
    dataverse_api_version: str = "v9.2"

    model_config = ConfigDict(extra="forbid")

    @field_validator("flow_api_base_url", "dataverse_url")
    @classmethod
    def strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        return value.rstrip("/") if value else value

    @property
    def flows_url(self) -> str:
        return f"{self.flow_api_base_url}/environments/{self.environment_id}/flows"

    @property
    def dataverse_api_url(self) -> Optional[str]:
        if not self.dataverse_url:
            return None
        return f"{self.dataverse_url}/api/data/{self.dataverse_api_version}"

    @property
    def dataverse_scope(self) -> Optional[str]:
        if not self.dataverse_url:
            return None
        return f"{self.dataverse_url}/.default"


class TenantConfig(BaseModel):
    tenant_id: str
    display_name: Optional[str] = None
    auth: AuthConfig
    default_scopes: List[str] = Field(
        default_factory=lambda: ["https://graph.microsoft.com/.default"]
    )
    graph_base_url: str = Field(
        default="https://graph.microsoft.com",
        description="Graph endpoint. Override for national clouds if needed.",
    )
    sharepoint: Optional[SharePointConfig] = None
    power_platform: Optional[PowerPlatformConfig] = None
    required_application_roles: List[str] = Field(
        default_factory=list,
        description="App roles the service must hold in this tenant (validation only)",
    )
    required_delegated_permissions: List[str] = Field(
        default_factory=list,
        description="Delegated permissions expected when using OBO/delegated flows",
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("default_scopes")
    @classmethod
    def ensure_scopes(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("At least one scope must be provided per tenant")
        return value

    @field_validator("graph_base_url")
    @classmethod
    def strip_graph_slash(cls, value: str) -> str:
        return value.rstrip("/")


class RuntimeSettings(BaseModel):
    timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    verify_attempts: int = Field(
        default=5, ge=1, description="Reads after a write before giving up on replication"
    )
    verify_delay: float = Field(default=2.0, ge=0)
    audit_log_dir: Optional[Path] = Field(
        default=None, description="Directory for daily AuditLog_YYYYMMDD.log files"
    )

    model_config = ConfigDict(extra="forbid")


class ProvisioningConfig(BaseModel):
    tenants: List[TenantConfig]
    settings: RuntimeSettings = Field(default_factory=RuntimeSettings)

    model_config = ConfigDict(extra="forbid")

    @field_validator("tenants")
    @classmethod
    def unique_tenants(cls, value: List[TenantConfig]) -> List[TenantConfig]:
        seen = set()
        for tenant in value:
            if tenant.tenant_id in seen:
                raise ValueError(f"Tenant {tenant.tenant_id} is configured more than once")
            seen.add(tenant.tenant_id)
        return value

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ProvisioningConfig":
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

        return cls(**raw)
