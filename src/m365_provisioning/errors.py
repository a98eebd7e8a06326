from __future__ import annotations

from typing import Optional


class ProvisioningError(RuntimeError):
    """Raised when a provisioning step cannot reach the desired state."""

    def __init__(self, message: str, kind: Optional[str] = None, name: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.name = name


class ResourceConflictError(ProvisioningError):
    """More than one existing object matches the identity of a desired resource."""


class VerificationError(ProvisioningError):
    """A resource could not be read back in its desired state after a write."""


class TenantNotConfiguredError(KeyError):
    def __init__(self, tenant_id: str):
        super().__init__(tenant_id)
        self.tenant_id = tenant_id

    def __str__(self) -> str:
        return f"Tenant {self.tenant_id} is not configured"
