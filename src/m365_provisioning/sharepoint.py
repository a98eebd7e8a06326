"""SharePoint site columns, content types, libraries and permissions.

Works against the SharePoint REST surface, the HTTP face of the client object
model: nothing is loaded implicitly, so every property the reconciliation needs
is requested with ``$select`` and every change is its own request.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Collection, Dict, List, Optional

from .context import TenantExecutionContext
from .errors import ProvisioningError, ResourceConflictError
from .manifest import ContentTypeSpec, LibrarySpec, PermissionSpec, SiteColumnSpec, SiteGroupSpec
from .reconcile import Action, ProvisionOutcome, await_convergence, ensure
from .rest_client import odata_quote

logger = logging.getLogger(__name__)

DOCUMENT_LIBRARY_TEMPLATE = 101
# AddFieldInternalNameHint: keep the Name attribute as the internal name
ADD_FIELD_INTERNAL_NAME_HINT = 8
MERGE_HEADERS = {"X-HTTP-Method": "MERGE", "IF-MATCH": "*"}


def claims_login_name(user_principal_name: str) -> str:
    return f"i:0#.f|membership|{user_principal_name.lower()}"


def _first(items: List[Dict[str, Any]], kind: str, name: str) -> Optional[Dict[str, Any]]:
    if len(items) > 1:
        raise ResourceConflictError(f"{len(items)} objects match {kind} {name!r}", kind=kind, name=name)
    return items[0] if items else None


class SharePointService:
    def __init__(self, context: TenantExecutionContext, site_url: Optional[str] = None):
        self.context = context
        self.sp = context.sharepoint(site_url)
        self._role_ids: Dict[str, int] = {}

    def _ensure(self, kind: str, name: str, **kwargs: Any) -> ProvisionOutcome:
        return ensure(
            kind,
            name,
            dry_run=self.context.dry_run,
            audit=self.context.audit,
            settings=self.context.reconcile_settings,
            tenant_id=self.context.tenant_id,
            correlation_id=self.context.correlation_id,
            **kwargs,
        )

    def _merge(self, path: str, changes: Dict[str, Any]) -> None:
        self.sp.post(path, json=changes, headers=MERGE_HEADERS)

    def _confirm(self, kind: str, name: str, outstanding: Callable[[], Collection[Any]]) -> None:
        await_convergence(kind, name, outstanding, self.context.reconcile_settings)

    def _audit_step(self, message: str, outcome: ProvisionOutcome) -> ProvisionOutcome:
        self.context.audit.info(
            message,
            tenant_id=self.context.tenant_id,
            correlation_id=self.context.correlation_id,
            kind=outcome.kind,
            name=outcome.name,
            action=outcome.action.value,
            changes=outcome.changes,
        )
        return outcome

    # site columns

    def find_site_column(self, internal_name: str) -> Optional[Dict[str, Any]]:
        items = self.sp.list_collection(
            "web/fields",
            params={
                "$filter": f"InternalName eq {odata_quote(internal_name)}",
                "$select": "Id,InternalName,Title,Description,Group,Required,TypeAsString",
            },
        )
        return _first(items, "site_column", internal_name)

    def ensure_site_column(self, spec: SiteColumnSpec) -> ProvisionOutcome:
        def find() -> Optional[Dict[str, Any]]:
            column = self.find_site_column(spec.internal_name)
            if column is not None and column.get("TypeAsString") != spec.field_type.value:
                raise ResourceConflictError(
                    f"Column {spec.internal_name} exists with type {column.get('TypeAsString')}, "
                    f"not {spec.field_type.value}",
                    kind="site_column",
                    name=spec.internal_name,
                )
            return column

        def create() -> Dict[str, Any]:
            response = self.sp.post(
                "web/fields/createfieldasxml",
                json={"parameters": {"SchemaXml": spec.schema_xml(), "Options": ADD_FIELD_INTERNAL_NAME_HINT}},
            )
            return response.json()

        return self._ensure(
            "site_column",
            spec.internal_name,
            find=find,
            create=create,
            desired=spec.rest_properties(),
            update=lambda existing, changes: self._merge(f"web/fields(guid'{existing['Id']}')", changes),
            resource_id=lambda item: item.get("Id"),
        )

    # content types

    def find_content_type(self, content_type_id: str) -> Optional[Dict[str, Any]]:
        return self.sp.get_json_or_none(
            f"web/contenttypes('{content_type_id}')",
            params={"$select": "StringId,Name,Description,Group"},
        )

    def ensure_content_type(self, spec: ContentTypeSpec) -> ProvisionOutcome:
        def create() -> Dict[str, Any]:
            payload = {
                "Id": {"StringValue": spec.content_type_id},
                "Name": spec.name,
                "Group": spec.group,
            }
            if spec.description:
                payload["Description"] = spec.description
            return self.sp.post("web/contenttypes", json=payload).json()

        return self._ensure(
            "content_type",
            spec.name,
            find=lambda: self.find_content_type(spec.content_type_id),
            create=create,
            desired=spec.rest_properties(),
            update=lambda existing, changes: self._merge(
                f"web/contenttypes('{spec.content_type_id}')", changes
            ),
            resource_id=lambda item: item.get("StringId"),
        )

    def missing_field_links(self, content_type_id: str, names: List[str]) -> List[str]:
        existing = set()
        if self.find_content_type(content_type_id) is not None:
            existing = {
                link.get("Name")
                for link in self.sp.list_collection(
                    f"web/contenttypes('{content_type_id}')/fieldlinks", params={"$select": "Id,Name"}
                )
            }
        return [name for name in names if name not in existing]

    def ensure_field_links(self, spec: ContentTypeSpec) -> ProvisionOutcome:
        path = f"web/contenttypes('{spec.content_type_id}')/fieldlinks"
        missing = self.missing_field_links(spec.content_type_id, spec.fields)

        if not missing:
            outcome = ProvisionOutcome("content_type_fields", spec.name, Action.UNCHANGED)
        elif self.context.dry_run:
            outcome = ProvisionOutcome("content_type_fields", spec.name, Action.WOULD_UPDATE, changes={"added": missing})
        else:
            for name in missing:
                if self.find_site_column(name) is None:
                    raise ProvisioningError(
                        f"Content type {spec.name} references unknown column {name}",
                        kind="content_type_fields",
                        name=spec.name,
                    )
                self.sp.post(path, json={"FieldInternalName": name})
            self._confirm(
                "content_type_fields", spec.name, lambda: self.missing_field_links(spec.content_type_id, missing)
            )
            outcome = ProvisionOutcome(
                "content_type_fields", spec.name, Action.UPDATED, resource_id=spec.content_type_id,
                changes={"added": missing},
            )
        return self._audit_step("content_type_fields_reconciled", outcome)

    # libraries

    def find_library(self, title: str) -> Optional[Dict[str, Any]]:
        items = self.sp.list_collection(
            "web/lists",
            params={
                "$filter": f"Title eq {odata_quote(title)}",
                "$select": "Id,Title,Description,EnableVersioning,ContentTypesEnabled,BaseTemplate,HasUniqueRoleAssignments",
            },
        )
        return _first(items, "library", title)

    def ensure_library(self, spec: LibrarySpec) -> ProvisionOutcome:
        def find() -> Optional[Dict[str, Any]]:
            library = self.find_library(spec.title)
            if library is not None and library.get("BaseTemplate") != DOCUMENT_LIBRARY_TEMPLATE:
                raise ResourceConflictError(
                    f"List {spec.title} exists but is not a document library",
                    kind="library",
                    name=spec.title,
                )
            return library

        def create() -> Dict[str, Any]:
            payload = {"Title": spec.title, "BaseTemplate": DOCUMENT_LIBRARY_TEMPLATE}
            payload.update({key: value for key, value in spec.rest_properties().items() if value is not None})
            return self.sp.post("web/lists", json=payload).json()

        return self._ensure(
            "library",
            spec.title,
            find=find,
            create=create,
            desired=spec.rest_properties(),
            update=lambda existing, changes: self._merge(f"web/lists(guid'{existing['Id']}')", changes),
            resource_id=lambda item: item.get("Id"),
        )

    def missing_library_content_types(self, library: Optional[Dict[str, Any]], names: List[str]) -> List[str]:
        existing = set()
        if library is not None:
            existing = {
                item.get("Name")
                for item in self.sp.list_collection(
                    f"web/lists(guid'{library['Id']}')/contenttypes", params={"$select": "StringId,Name"}
                )
            }
        return [name for name in names if name not in existing]

    def ensure_library_content_types(self, spec: LibrarySpec) -> ProvisionOutcome:
        library = self.find_library(spec.title)
        missing = self.missing_library_content_types(library, spec.content_types)

        if not missing:
            outcome = ProvisionOutcome("library_content_types", spec.title, Action.UNCHANGED)
        elif self.context.dry_run:
            outcome = ProvisionOutcome("library_content_types", spec.title, Action.WOULD_UPDATE, changes={"added": missing})
        else:
            if library is None:
                raise ProvisioningError(f"Library {spec.title} not found", kind="library_content_types", name=spec.title)
            for name in missing:
                content_type = _first(
                    self.sp.list_collection(
                        "web/availablecontenttypes",
                        params={"$filter": f"Name eq {odata_quote(name)}", "$select": "StringId,Name"},
                    ),
                    "content_type",
                    name,
                )
                if content_type is None:
                    raise ProvisioningError(
                        f"Library {spec.title} references unknown content type {name}",
                        kind="library_content_types",
                        name=spec.title,
                    )
                self.sp.post(
                    f"web/lists(guid'{library['Id']}')/contenttypes/addavailablecontenttype",
                    json={"contentTypeId": content_type["StringId"]},
                )
            self._confirm(
                "library_content_types", spec.title, lambda: self.missing_library_content_types(library, missing)
            )
            outcome = ProvisionOutcome(
                "library_content_types", spec.title, Action.UPDATED, resource_id=library["Id"],
                changes={"added": missing},
            )
        return self._audit_step("library_content_types_reconciled", outcome)

    # site groups

    def find_site_group(self, title: str) -> Optional[Dict[str, Any]]:
        items = self.sp.list_collection(
            "web/sitegroups",
            params={"$filter": f"Title eq {odata_quote(title)}", "$select": "Id,Title,Description"},
        )
        return _first(items, "site_group", title)

    def ensure_site_group(self, spec: SiteGroupSpec) -> ProvisionOutcome:
        def create() -> Dict[str, Any]:
            payload = {"Title": spec.title}
            if spec.description:
                payload["Description"] = spec.description
            return self.sp.post("web/sitegroups", json=payload).json()

        return self._ensure(
            "site_group",
            spec.title,
            find=lambda: self.find_site_group(spec.title),
            create=create,
            desired={"Description": spec.description},
            update=lambda existing, changes: self._merge(f"web/sitegroups({existing['Id']})", changes),
            resource_id=lambda item: str(item["Id"]) if item.get("Id") is not None else None,
        )

    def missing_site_group_members(self, group: Optional[Dict[str, Any]], members: List[str]) -> List[str]:
        existing = set()
        if group is not None:
            existing = {
                (item.get("LoginName") or "").lower()
                for item in self.sp.list_collection(
                    f"web/sitegroups({group['Id']})/users", params={"$select": "Id,LoginName"}
                )
            }
        return [upn for upn in members if claims_login_name(upn) not in existing]

    def ensure_site_group_members(self, spec: SiteGroupSpec) -> ProvisionOutcome:
        group = self.find_site_group(spec.title)
        missing = self.missing_site_group_members(group, spec.members)

        if not missing:
            outcome = ProvisionOutcome("site_group_members", spec.title, Action.UNCHANGED)
        elif self.context.dry_run:
            outcome = ProvisionOutcome("site_group_members", spec.title, Action.WOULD_UPDATE, changes={"added": missing})
        else:
            if group is None:
                raise ProvisioningError(f"Site group {spec.title} not found", kind="site_group_members", name=spec.title)
            for upn in missing:
                self.sp.post(f"web/sitegroups({group['Id']})/users", json={"LoginName": claims_login_name(upn)})
            self._confirm("site_group_members", spec.title, lambda: self.missing_site_group_members(group, missing))
            outcome = ProvisionOutcome(
                "site_group_members", spec.title, Action.UPDATED, resource_id=str(group["Id"]),
                changes={"added": missing},
            )
        return self._audit_step("site_group_members_reconciled", outcome)

    # role assignments

    def get_role_definition_id(self, role: str) -> int:
        if role not in self._role_ids:
            definition = self.sp.get_json_or_none(
                f"web/roledefinitions/getbyname({odata_quote(role)})", params={"$select": "Id,Name"}
            )
            if definition is None:
                raise ProvisioningError(f"Permission level {role!r} does not exist", kind="role_definition", name=role)
            self._role_ids[role] = int(definition["Id"])
        return self._role_ids[role]

    def _inherited_permissions(self, title: str) -> List[str]:
        library = self.find_library(title) or {}
        return [] if library.get("HasUniqueRoleAssignments") else ["HasUniqueRoleAssignments"]

    def ensure_unique_permissions(self, title: str, copy_role_assignments: bool = True) -> ProvisionOutcome:
        library = self.find_library(title)
        if library is None:
            if not self.context.dry_run:
                raise ProvisioningError(f"Library {title} not found", kind="unique_permissions", name=title)
            outcome = ProvisionOutcome("unique_permissions", title, Action.WOULD_UPDATE)
        elif library.get("HasUniqueRoleAssignments"):
            outcome = ProvisionOutcome("unique_permissions", title, Action.UNCHANGED, resource_id=library["Id"])
        elif self.context.dry_run:
            outcome = ProvisionOutcome("unique_permissions", title, Action.WOULD_UPDATE, resource_id=library["Id"])
        else:
            copy = "true" if copy_role_assignments else "false"
            self.sp.post(
                f"web/lists(guid'{library['Id']}')/breakroleinheritance(copyRoleAssignments={copy},clearSubscopes=true)"
            )
            self._confirm("unique_permissions", title, lambda: self._inherited_permissions(title))
            outcome = ProvisionOutcome(
                "unique_permissions", title, Action.UPDATED, resource_id=library["Id"],
                changes={"HasUniqueRoleAssignments": True},
            )
        return self._audit_step("unique_permissions_reconciled", outcome)

    def role_bindings(self, scope_path: str, principal_id: int) -> List[Dict[str, Any]]:
        response = self.sp.get(
            f"{scope_path}/roleassignments/getbyprincipalid({principal_id})/roledefinitionbindings",
            params={"$select": "Id,Name"},
            ok_statuses=(404,),
        )
        if response.status_code == 404:
            return []
        return response.json().get("value", [])

    def ensure_role_assignment(self, spec: PermissionSpec) -> ProvisionOutcome:
        name = f"{spec.principal}:{spec.role}@{spec.scope_name}"
        group = self.find_site_group(spec.principal)
        library = self.find_library(spec.library) if spec.library else None

        if group is None or (spec.library and library is None):
            if self.context.dry_run:
                return self._audit_step(
                    "role_assignment_reconciled",
                    ProvisionOutcome("role_assignment", name, Action.WOULD_CREATE),
                )
            missing = spec.principal if group is None else spec.library
            raise ProvisioningError(f"Cannot assign {spec.role}: {missing} not found", kind="role_assignment", name=name)

        role_id = self.get_role_definition_id(spec.role)
        scope_path = f"web/lists(guid'{library['Id']}')" if library else "web"

        def unbound() -> List[str]:
            bindings = self.role_bindings(scope_path, group["Id"])
            return [] if any(int(binding["Id"]) == role_id for binding in bindings) else [spec.role]

        if not unbound():
            outcome = ProvisionOutcome("role_assignment", name, Action.UNCHANGED, resource_id=str(role_id))
        elif self.context.dry_run:
            outcome = ProvisionOutcome("role_assignment", name, Action.WOULD_CREATE, resource_id=str(role_id))
        else:
            self.sp.post(f"{scope_path}/roleassignments/addroleassignment(principalid={group['Id']},roledefid={role_id})")
            self._confirm("role_assignment", name, unbound)
            outcome = ProvisionOutcome(
                "role_assignment", name, Action.CREATED, resource_id=str(role_id),
                changes={"principal_id": group["Id"], "role_definition_id": role_id},
            )
        return self._audit_step("role_assignment_reconciled", outcome)
