from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx
from azure.core.exceptions import ClientAuthenticationError

from .context import TenantExecutionContext
from .directory import DirectoryService
from .manifest import PowerPlatformSpec, ProvisioningManifest, SharePointSpec
from .reconcile import Action, ProvisionOutcome
from .sharepoint import SharePointService
from .solutions import SolutionService

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningReport:
    tenant_id: str
    correlation_id: Optional[str]
    dry_run: bool
    outcomes: List[ProvisionOutcome] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return any(outcome.action == Action.FAILED for outcome in self.outcomes)

    def summary(self) -> Dict[str, int]:
        counts = Counter(outcome.action.value for outcome in self.outcomes)
        return {action.value: counts.get(action.value, 0) for action in Action}

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "correlation_id": self.correlation_id,
            "dry_run": self.dry_run,
            "summary": self.summary(),
            "outcomes": [outcome.as_dict() for outcome in self.outcomes],
        }


class Provisioner:
    """Converges a tenant onto a manifest.

    Steps run in dependency order: directory objects first, then SharePoint schema,
    libraries and permissions, then Power Platform solutions. With
    ``continue_on_error`` a failing step is recorded and the run moves on; otherwise
    the first failure propagates.
    """

    def __init__(self, context: TenantExecutionContext, continue_on_error: bool = False):
        self.context = context
        self.continue_on_error = continue_on_error
        self.report = ProvisioningReport(
            tenant_id=context.tenant_id,
            correlation_id=context.correlation_id,
            dry_run=context.dry_run,
        )

    def run(self, manifest: ProvisioningManifest) -> ProvisioningReport:
        self.context.audit.info(
            "provisioning_started",
            tenant_id=self.context.tenant_id,
            correlation_id=self.context.correlation_id,
            dry_run=self.context.dry_run,
        )
        if manifest.users or manifest.groups:
            self._directory(manifest)
        if manifest.sharepoint:
            self._sharepoint(manifest.sharepoint)
        if manifest.power_platform:
            self._power_platform(manifest.power_platform)

        self.context.audit.info(
            "provisioning_completed",
            tenant_id=self.context.tenant_id,
            correlation_id=self.context.correlation_id,
            summary=self.report.summary(),
        )
        return self.report

    def _step(self, kind: str, name: str, action: Callable[[], ProvisionOutcome]) -> Optional[ProvisionOutcome]:
        try:
            outcome = action()
        except (RuntimeError, httpx.HTTPError, ValueError, ClientAuthenticationError) as exc:
            self.context.audit.error(
                "provisioning_step_failed",
                tenant_id=self.context.tenant_id,
                correlation_id=self.context.correlation_id,
                kind=kind,
                name=name,
                error=str(exc),
            )
            if not self.continue_on_error:
                raise
            outcome = ProvisionOutcome(kind, name, Action.FAILED, error=str(exc))
        self.report.outcomes.append(outcome)
        return outcome

    @staticmethod
    def _created_or_existing(outcome: Optional[ProvisionOutcome]) -> bool:
        return outcome is not None and outcome.action != Action.FAILED

    def _directory(self, manifest: ProvisioningManifest) -> None:
        directory = DirectoryService(self.context)
        for user in manifest.users:
            self._step("user", user.user_principal_name, lambda user=user: directory.ensure_user(user))

        for group in manifest.groups:
            outcome = self._step("group", group.mail_nickname, lambda group=group: directory.ensure_group(group))
            if not self._created_or_existing(outcome):
                continue
            for relationship in ("members", "owners"):
                upns = getattr(group, relationship)
                if upns:
                    self._step(
                        f"group_{relationship}",
                        group.mail_nickname,
                        lambda group=group, upns=upns, relationship=relationship, group_id=outcome.resource_id: (
                            directory.ensure_group_relationship(group.mail_nickname, group_id, upns, relationship)
                        ),
                    )

    def _sharepoint(self, spec: SharePointSpec) -> None:
        sharepoint = SharePointService(self.context, spec.site_url)

        for column in spec.columns:
            self._step("site_column", column.internal_name, lambda column=column: sharepoint.ensure_site_column(column))

        for content_type in spec.content_types:
            outcome = self._step(
                "content_type", content_type.name, lambda ct=content_type: sharepoint.ensure_content_type(ct)
            )
            if self._created_or_existing(outcome) and content_type.fields:
                self._step(
                    "content_type_fields", content_type.name, lambda ct=content_type: sharepoint.ensure_field_links(ct)
                )

        for library in spec.libraries:
            outcome = self._step("library", library.title, lambda library=library: sharepoint.ensure_library(library))
            if self._created_or_existing(outcome) and library.content_types:
                self._step(
                    "library_content_types",
                    library.title,
                    lambda library=library: sharepoint.ensure_library_content_types(library),
                )

        for group in spec.site_groups:
            outcome = self._step("site_group", group.title, lambda group=group: sharepoint.ensure_site_group(group))
            if self._created_or_existing(outcome) and group.members:
                self._step(
                    "site_group_members", group.title, lambda group=group: sharepoint.ensure_site_group_members(group)
                )

        for permission in spec.permissions:
            if permission.library and permission.break_inheritance:
                self._step(
                    "unique_permissions",
                    permission.library,
                    lambda permission=permission: sharepoint.ensure_unique_permissions(
                        permission.library, permission.copy_role_assignments
                    ),
                )
            self._step(
                "role_assignment",
                f"{permission.principal}:{permission.role}@{permission.scope_name}",
                lambda permission=permission: sharepoint.ensure_role_assignment(permission),
            )

    def _power_platform(self, spec: PowerPlatformSpec) -> None:
        if spec.publisher is None:
            return
        solutions = SolutionService(self.context)
        publisher = self._step("publisher", spec.publisher.unique_name, lambda: solutions.ensure_publisher(spec.publisher))
        if not self._created_or_existing(publisher):
            return

        for solution in spec.solutions:
            outcome = self._step(
                "solution",
                solution.unique_name,
                lambda solution=solution: solutions.ensure_solution(solution, publisher.resource_id),
            )
            if self._created_or_existing(outcome) and solution.flows:
                self._step(
                    "solution_flows",
                    solution.unique_name,
                    lambda solution=solution, solution_id=outcome.resource_id: solutions.ensure_solution_flows(
                        solution, solution_id
                    ),
                )
