from __future__ import annotations

from functools import cached_property
from typing import Any, Dict, List, Optional

from .context import TenantExecutionContext
from .directory import DirectoryService
from .flows import FlowService
from .manifest import ProvisioningManifest
from .provisioner import Provisioner, ProvisioningReport
from .reconcile import ProvisionOutcome
from .sharepoint import SharePointService
from .solutions import SolutionService


class TenantOperations:
    """Operations executed within a tenant context."""

    def __init__(self, context: TenantExecutionContext):
        self.context = context

    @cached_property
    def directory(self) -> DirectoryService:
        return DirectoryService(self.context)

    @cached_property
    def flows(self) -> FlowService:
        return FlowService(self.context)

    @cached_property
    def solutions(self) -> SolutionService:
        return SolutionService(self.context)

    def sharepoint(self, site_url: Optional[str] = None) -> SharePointService:
        return SharePointService(self.context, site_url)

    def list_users(self, top: int = 10) -> List[Dict[str, Any]]:
        return self.directory.list_users(top=top)

    def create_security_group(self, display_name: str, description: str) -> ProvisionOutcome:
        return self.directory.create_security_group(display_name=display_name, description=description)

    def provision(self, manifest: ProvisioningManifest, continue_on_error: bool = False) -> ProvisioningReport:
        return Provisioner(self.context, continue_on_error=continue_on_error).run(manifest)
