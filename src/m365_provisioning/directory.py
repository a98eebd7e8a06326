"""Entra ID users, groups and memberships through Microsoft Graph."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from .context import TenantExecutionContext
from .errors import ProvisioningError, ResourceConflictError
from .manifest import GroupKind, GroupSpec, UserSpec
from .reconcile import Action, ProvisionOutcome, await_convergence, ensure
from .rest_client import odata_quote

logger = logging.getLogger(__name__)

USER_SELECT = (
    "id,userPrincipalName,displayName,givenName,surname,jobTitle,"
    "department,usageLocation,accountEnabled,mailNickname"
)
GROUP_SELECT = "id,displayName,description,mailNickname,groupTypes,securityEnabled,mailEnabled"
RELATIONSHIPS = ("members", "owners")


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


class DirectoryService:
    def __init__(self, context: TenantExecutionContext):
        self.context = context
        self.graph = context.graph

    def list_users(self, top: int = 10) -> List[Dict[str, Any]]:
        response = self.graph.get(f"/v1.0/users?$top={top}")
        data = response.json()
        return data.get("value", [])

    # users

    def find_user(self, user_principal_name: str) -> Optional[Dict[str, Any]]:
        return self.graph.get_json_or_none(
            f"/v1.0/users/{quote(user_principal_name, safe='@')}",
            params={"$select": USER_SELECT},
        )

    def ensure_user(self, spec: UserSpec) -> ProvisionOutcome:
        def create() -> Dict[str, Any]:
            if spec.password is None:
                raise ProvisioningError(
                    f"User {spec.user_principal_name} does not exist and no initial password is configured",
                    kind="user",
                    name=spec.user_principal_name,
                )
            payload = _compact(spec.graph_properties())
            payload.update(
                {
                    "userPrincipalName": spec.user_principal_name,
                    "mailNickname": spec.nickname,
                    "passwordProfile": {
                        "forceChangePasswordNextSignIn": spec.force_change_password_next_sign_in,
                        "password": spec.password.resolve(),
                    },
                }
            )
            return self.graph.post("/v1.0/users", json=payload).json()

        def update(existing: Dict[str, Any], changes: Dict[str, Any]) -> None:
            self.graph.patch(f"/v1.0/users/{existing['id']}", json=changes)

        return ensure(
            "user",
            spec.user_principal_name,
            find=lambda: self.find_user(spec.user_principal_name),
            create=create,
            desired=spec.graph_properties(),
            update=update,
            dry_run=self.context.dry_run,
            audit=self.context.audit,
            settings=self.context.reconcile_settings,
            tenant_id=self.context.tenant_id,
            correlation_id=self.context.correlation_id,
        )

    # groups

    def find_group(self, mail_nickname: str) -> Optional[Dict[str, Any]]:
        matches = self.graph.list_collection(
            "/v1.0/groups",
            params={
                "$filter": f"mailNickname eq {odata_quote(mail_nickname)}",
                "$select": GROUP_SELECT,
            },
        )
        if len(matches) > 1:
            raise ResourceConflictError(
                f"{len(matches)} groups share mailNickname {mail_nickname!r}",
                kind="group",
                name=mail_nickname,
            )
        return matches[0] if matches else None

    def ensure_group(self, spec: GroupSpec) -> ProvisionOutcome:
        def find() -> Optional[Dict[str, Any]]:
            group = self.find_group(spec.mail_nickname)
            if group is not None and _group_kind(group) != spec.kind:
                raise ResourceConflictError(
                    f"Group {spec.mail_nickname!r} exists as {_group_kind(group).value}, not {spec.kind.value}",
                    kind="group",
                    name=spec.mail_nickname,
                )
            return group

        def create() -> Dict[str, Any]:
            unified = spec.kind == GroupKind.MICROSOFT_365
            payload = _compact(
                {
                    "displayName": spec.display_name,
                    "description": spec.description,
                    "mailNickname": spec.mail_nickname,
                    "securityEnabled": not unified,
                    "mailEnabled": unified,
                    "groupTypes": ["Unified"] if unified else [],
                }
            )
            return self.graph.post("/v1.0/groups", json=payload).json()

        def update(existing: Dict[str, Any], changes: Dict[str, Any]) -> None:
            self.graph.patch(f"/v1.0/groups/{existing['id']}", json=changes)

        return ensure(
            "group",
            spec.mail_nickname,
            find=find,
            create=create,
            desired=spec.graph_properties(),
            update=update,
            dry_run=self.context.dry_run,
            audit=self.context.audit,
            settings=self.context.reconcile_settings,
            tenant_id=self.context.tenant_id,
            correlation_id=self.context.correlation_id,
        )

    def create_security_group(self, display_name: str, description: str, mail_nickname: Optional[str] = None) -> ProvisionOutcome:
        nickname = mail_nickname or "".join(char for char in display_name if char.isalnum())
        return self.ensure_group(
            GroupSpec(display_name=display_name, description=description, mail_nickname=nickname)
        )

    def list_relationship(self, group_id: str, relationship: str = "members") -> List[Dict[str, Any]]:
        return self.graph.list_collection(
            f"/v1.0/groups/{group_id}/{relationship}",
            params={"$select": "id,userPrincipalName"},
        )

    def missing_principals(
        self, group_id: Optional[str], user_principal_names: List[str], relationship: str = "members"
    ) -> List[str]:
        current: set = set()
        if group_id is not None:
            current = {
                (item.get("userPrincipalName") or "").lower()
                for item in self.list_relationship(group_id, relationship)
            }
        return [upn for upn in user_principal_names if upn.lower() not in current]

    def ensure_group_relationship(
        self,
        group_name: str,
        group_id: Optional[str],
        user_principal_names: List[str],
        relationship: str = "members",
    ) -> ProvisionOutcome:
        """Add the missing members (or owners). Principals already present are left alone,
        and principals not listed are never removed."""
        if relationship not in RELATIONSHIPS:
            raise ValueError(f"Unsupported group relationship: {relationship}")
        kind = f"group_{relationship}"
        missing = self.missing_principals(group_id, user_principal_names, relationship)

        if not missing:
            outcome = ProvisionOutcome(kind, group_name, Action.UNCHANGED, resource_id=group_id)
        elif self.context.dry_run:
            outcome = ProvisionOutcome(
                kind, group_name, Action.WOULD_UPDATE, resource_id=group_id, changes={"added": missing}
            )
        else:
            if group_id is None:
                raise ProvisioningError(f"Group {group_name!r} has no id", kind=kind, name=group_name)
            for upn in missing:
                user = self.find_user(upn)
                if user is None:
                    raise ProvisioningError(
                        f"Cannot add {upn} to {group_name}: user not found", kind=kind, name=group_name
                    )
                self.graph.post(
                    f"/v1.0/groups/{group_id}/{relationship}/$ref",
                    json={"@odata.id": f"{self.context.tenant.graph_base_url}/v1.0/directoryObjects/{user['id']}"},
                )
            await_convergence(
                kind,
                group_name,
                lambda: self.missing_principals(group_id, missing, relationship),
                self.context.reconcile_settings,
            )
            outcome = ProvisionOutcome(
                kind, group_name, Action.UPDATED, resource_id=group_id, changes={"added": missing}
            )

        self.context.audit.info(
            "group_relationship_reconciled",
            tenant_id=self.context.tenant_id,
            correlation_id=self.context.correlation_id,
            group=group_name,
            relationship=relationship,
            action=outcome.action.value,
            added=missing,
        )
        return outcome


def _group_kind(group: Dict[str, Any]) -> GroupKind:
    if "Unified" in (group.get("groupTypes") or []):
        return GroupKind.MICROSOFT_365
    return GroupKind.SECURITY
