"""Shared fixtures: an in-memory Microsoft 365 tenant served through httpx.MockTransport."""
import base64
import io
import itertools
import json
import re
import uuid
import zipfile
from urllib.parse import unquote
from xml.etree import ElementTree

import httpx
import pytest

from m365_provisioning.audit import InMemoryAuditStore, JsonAuditLogger
from m365_provisioning.auth import StaticTokenProvider
from m365_provisioning.config import ProvisioningConfig, RuntimeSettings, TenantConfig
from m365_provisioning.context import TenantExecutionContext
from m365_provisioning.tenant_manager import TenantManager

TENANT_ID = "12345678-1234-1234-1234-123456789012"
SITE_PATH = "/sites/concepts"
SITE_URL = f"https://contoso.sharepoint.com{SITE_PATH}"
ENVIRONMENT_ID = "env-1"
DATAVERSE_URL = "https://org.crm.dynamics.com"

SP = re.escape(f"{SITE_PATH}/_api/")
FLOWS = re.escape(f"/providers/Microsoft.ProcessSimple/environments/{ENVIRONMENT_ID}/flows")
DV = re.escape("/api/data/v9.2/")
SCOPE = r"(web(?:/lists\(guid'[^']+'\))?)"

SOLUTION_XML = """<?xml version="1.0" encoding="utf-8"?>
<ImportExportXml version="9.2">
  <SolutionManifest>
    <UniqueName>{name}</UniqueName>
    <LocalizedNames><LocalizedName description="{name} display" languagecode="1033" /></LocalizedNames>
    <Version>1.0.0.0</Version>
    <Managed>0</Managed>
    <Publisher><UniqueName>StrategicConcepts</UniqueName><CustomizationPrefix>gfi</CustomizationPrefix></Publisher>
  </SolutionManifest>
</ImportExportXml>
"""


def solution_zip_bytes(name):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("Other/Solution.xml", SOLUTION_XML.format(name=name))
        archive.writestr("Workflows/ConceptApproval.json", "{}")
    return buffer.getvalue()


def _eq(filter_value, key):
    match = re.search(rf"{key} eq '((?:[^']|'')*)'", filter_value or "")
    return match.group(1).replace("''", "'") if match else None


def _json(request):
    return json.loads(request.content) if request.content else {}


def _ok(payload=None, status=200):
    if payload is None:
        return httpx.Response(204)
    return httpx.Response(status, json=payload)


def _missing():
    return httpx.Response(404, json={"error": {"message": "not found"}})


class FakeTenant:
    """In-memory stand-in for Graph, SharePoint REST, Power Automate and Dataverse."""

    def __init__(self):
        self.requests = []
        self.dropped = set()
        self.users = {}
        self.groups = {}
        self.relationships = {}
        self.fields = {}
        self.content_types = {}
        self.field_links = {}
        self.lists = {}
        self.list_content_types = {}
        self.site_groups = {}
        self.site_group_users = {}
        self.role_definitions = {"Read": 1073741826, "Contribute": 1073741827, "Full Control": 1073741829}
        self.role_assignments = {}
        self.flows = {}
        self.runs = {}
        self.accept_put_create = False
        self.publishers = {}
        self.solutions = {}
        self.components = []
        self.imports = []
        self._ids = itertools.count(10)
        self.routes = [
            ("GET", r"/v1\.0/users", self.graph_list_users),
            ("GET", r"/v1\.0/users/([^/]+)", self.graph_get_user),
            ("POST", r"/v1\.0/users", self.graph_create_user),
            ("PATCH", r"/v1\.0/users/([^/]+)", self.graph_update_user),
            ("GET", r"/v1\.0/groups", self.graph_list_groups),
            ("POST", r"/v1\.0/groups", self.graph_create_group),
            ("PATCH", r"/v1\.0/groups/([^/]+)", self.graph_update_group),
            ("GET", r"/v1\.0/groups/([^/]+)/(members|owners)", self.graph_list_relationship),
            ("POST", r"/v1\.0/groups/([^/]+)/(members|owners)/\$ref", self.graph_add_relationship),
            ("GET", SP + r"web/fields", self.sp_list_fields),
            ("POST", SP + r"web/fields/createfieldasxml", self.sp_create_field),
            ("POST", SP + r"web/fields\(guid'([^']+)'\)", self.sp_merge_field),
            ("GET", SP + r"web/contenttypes\('([^']+)'\)/fieldlinks", self.sp_list_field_links),
            ("POST", SP + r"web/contenttypes\('([^']+)'\)/fieldlinks", self.sp_add_field_link),
            ("GET", SP + r"web/contenttypes\('([^']+)'\)", self.sp_get_content_type),
            ("POST", SP + r"web/contenttypes", self.sp_create_content_type),
            ("POST", SP + r"web/contenttypes\('([^']+)'\)", self.sp_merge_content_type),
            ("GET", SP + r"web/availablecontenttypes", self.sp_available_content_types),
            ("GET", SP + r"web/lists", self.sp_list_lists),
            ("POST", SP + r"web/lists", self.sp_create_list),
            ("POST", SP + r"web/lists\(guid'([^']+)'\)", self.sp_merge_list),
            ("GET", SP + r"web/lists\(guid'([^']+)'\)/contenttypes", self.sp_list_list_content_types),
            (
                "POST",
                SP + r"web/lists\(guid'([^']+)'\)/contenttypes/addavailablecontenttype",
                self.sp_add_list_content_type,
            ),
            (
                "POST",
                SP + r"web/lists\(guid'([^']+)'\)/breakroleinheritance\(copyRoleAssignments=(\w+),clearSubscopes=(\w+)\)",
                self.sp_break_inheritance,
            ),
            ("GET", SP + r"web/sitegroups", self.sp_list_site_groups),
            ("POST", SP + r"web/sitegroups", self.sp_create_site_group),
            ("POST", SP + r"web/sitegroups\((\d+)\)", self.sp_merge_site_group),
            ("GET", SP + r"web/sitegroups\((\d+)\)/users", self.sp_list_site_group_users),
            ("POST", SP + r"web/sitegroups\((\d+)\)/users", self.sp_add_site_group_user),
            ("GET", SP + r"web/roledefinitions/getbyname\('([^']+)'\)", self.sp_role_definition),
            (
                "GET",
                SP + SCOPE + r"/roleassignments/getbyprincipalid\((\d+)\)/roledefinitionbindings",
                self.sp_role_bindings,
            ),
            (
                "POST",
                SP + SCOPE + r"/roleassignments/addroleassignment\(principalid=(\d+),roledefid=(\d+)\)",
                self.sp_add_role_assignment,
            ),
            ("GET", FLOWS, self.flow_list),
            ("POST", FLOWS, self.flow_create),
            ("GET", FLOWS + r"/([^/]+)", self.flow_get),
            ("PUT", FLOWS + r"/([^/]+)", self.flow_put),
            ("DELETE", FLOWS + r"/([^/]+)", self.flow_delete),
            ("POST", FLOWS + r"/([^/]+)/(start|stop)", self.flow_set_state),
            ("GET", FLOWS + r"/([^/]+)/runs", self.flow_runs),
            ("GET", FLOWS + r"/([^/]+)/runs/([^/]+)", self.flow_run),
            ("GET", DV + r"publishers", self.dv_list_publishers),
            ("POST", DV + r"publishers", self.dv_create_publisher),
            ("PATCH", DV + r"publishers\(([^)]+)\)", self.dv_update_publisher),
            ("GET", DV + r"solutions", self.dv_list_solutions),
            ("POST", DV + r"solutions", self.dv_create_solution),
            ("PATCH", DV + r"solutions\(([^)]+)\)", self.dv_update_solution),
            ("GET", DV + r"solutioncomponents", self.dv_list_components),
            ("POST", DV + r"AddSolutionComponent", self.dv_add_component),
            ("POST", DV + r"ExportSolution", self.dv_export),
            ("POST", DV + r"ImportSolution", self.dv_import),
        ]

    def __call__(self, request):
        self.requests.append(request)
        path = unquote(request.url.path)
        for method, pattern, handler in self.routes:
            if method == request.method:
                match = re.fullmatch(pattern, path)
                if match:
                    if handler.__name__ in self.dropped:
                        return _ok()
                    return handler(request, *match.groups())
        return httpx.Response(404, json={"error": {"message": f"no route for {request.method} {path}"}})

    def drop(self, *handler_names):
        """Acknowledge writes to these handlers without applying them."""
        self.dropped.update(handler_names)

    @property
    def writes(self):
        return [request for request in self.requests if request.method != "GET"]

    def transport(self):
        return httpx.MockTransport(self)

    def new_id(self):
        return str(uuid.uuid4())

    # seeding helpers

    def add_user(self, upn, **properties):
        user = {"id": self.new_id(), "userPrincipalName": upn, "accountEnabled": True}
        user.update(properties)
        self.users[user["id"]] = user
        return user

    def add_group(self, nickname, display_name, unified=False, **properties):
        group = {
            "id": self.new_id(),
            "mailNickname": nickname,
            "displayName": display_name,
            "description": None,
            "groupTypes": ["Unified"] if unified else [],
            "securityEnabled": not unified,
            "mailEnabled": unified,
        }
        group.update(properties)
        self.groups[group["id"]] = group
        return group

    def add_flow(self, flow_id, name, state="Started"):
        self.flows[flow_id] = {
            "name": flow_id,
            "properties": {
                "displayName": name,
                "state": state,
                "createdTime": "2024-01-01T00:00:00Z",
                "lastModifiedTime": "2024-01-02T00:00:00Z",
            },
        }
        return self.flows[flow_id]

    # Graph

    def _user_by_key(self, key):
        for user in self.users.values():
            if user["id"] == key or user["userPrincipalName"].lower() == key.lower():
                return user
        return None

    def graph_list_users(self, request):
        top = int(request.url.params.get("$top", 100))
        return _ok({"value": list(self.users.values())[:top]})

    def graph_get_user(self, request, key):
        user = self._user_by_key(key)
        return _ok(user) if user else _missing()

    def graph_create_user(self, request):
        body = _json(request)
        body.pop("passwordProfile")
        user = {"id": self.new_id(), **body}
        self.users[user["id"]] = user
        return _ok(user, 201)

    def graph_update_user(self, request, key):
        self._user_by_key(key).update(_json(request))
        return _ok()

    def graph_list_groups(self, request):
        nickname = _eq(request.url.params.get("$filter"), "mailNickname")
        matches = [group for group in self.groups.values() if nickname is None or group["mailNickname"] == nickname]
        return _ok({"value": matches})

    def graph_create_group(self, request):
        group = {"id": self.new_id(), "description": None, **_json(request)}
        self.groups[group["id"]] = group
        return _ok(group, 201)

    def graph_update_group(self, request, group_id):
        self.groups[group_id].update(_json(request))
        return _ok()

    def graph_list_relationship(self, request, group_id, relationship):
        ids = self.relationships.get((group_id, relationship), [])
        return _ok({"value": [{"id": uid, "userPrincipalName": self.users[uid]["userPrincipalName"]} for uid in ids]})

    def graph_add_relationship(self, request, group_id, relationship):
        user_id = _json(request)["@odata.id"].rsplit("/", 1)[-1]
        self.relationships.setdefault((group_id, relationship), []).append(user_id)
        return _ok()

    # SharePoint

    @staticmethod
    def _merge(request, target):
        assert request.headers.get("X-HTTP-Method") == "MERGE"
        target.update(_json(request))
        return _ok()

    def sp_list_fields(self, request):
        name = _eq(request.url.params.get("$filter"), "InternalName")
        return _ok({"value": [field for field in self.fields.values() if field["InternalName"] == name]})

    def sp_create_field(self, request):
        schema = ElementTree.fromstring(_json(request)["parameters"]["SchemaXml"])
        field = {
            "Id": self.new_id(),
            "InternalName": schema.get("Name"),
            "Title": schema.get("DisplayName"),
            "Description": schema.get("Description", ""),
            "Group": schema.get("Group"),
            "Required": schema.get("Required") == "TRUE",
            "TypeAsString": schema.get("Type"),
        }
        self.fields[field["Id"]] = field
        return _ok(field, 201)

    def sp_merge_field(self, request, field_id):
        return self._merge(request, self.fields[field_id])

    def sp_get_content_type(self, request, content_type_id):
        content_type = self.content_types.get(content_type_id)
        # SharePoint answers key lookups that match nothing with a null entity
        return _ok(content_type) if content_type else _ok({"odata.null": True})

    def sp_create_content_type(self, request):
        body = _json(request)
        content_type = {
            "StringId": body["Id"]["StringValue"],
            "Name": body["Name"],
            "Group": body.get("Group"),
            "Description": body.get("Description", ""),
        }
        self.content_types[content_type["StringId"]] = content_type
        return _ok(content_type, 201)

    def sp_merge_content_type(self, request, content_type_id):
        return self._merge(request, self.content_types[content_type_id])

    def sp_list_field_links(self, request, content_type_id):
        names = self.field_links.get(content_type_id, [])
        return _ok({"value": [{"Id": self.new_id(), "Name": name} for name in names]})

    def sp_add_field_link(self, request, content_type_id):
        self.field_links.setdefault(content_type_id, []).append(_json(request)["FieldInternalName"])
        return _ok({"Name": _json(request)["FieldInternalName"]}, 201)

    def sp_available_content_types(self, request):
        name = _eq(request.url.params.get("$filter"), "Name")
        return _ok({"value": [ct for ct in self.content_types.values() if ct["Name"] == name]})

    def sp_list_lists(self, request):
        title = _eq(request.url.params.get("$filter"), "Title")
        return _ok({"value": [item for item in self.lists.values() if item["Title"] == title]})

    def sp_create_list(self, request):
        body = _json(request)
        library = {
            "Id": self.new_id(),
            "Description": "",
            "EnableVersioning": False,
            "ContentTypesEnabled": False,
            "HasUniqueRoleAssignments": False,
            **body,
        }
        self.lists[library["Id"]] = library
        return _ok(library, 201)

    def sp_merge_list(self, request, list_id):
        return self._merge(request, self.lists[list_id])

    def sp_list_list_content_types(self, request, list_id):
        return _ok({"value": self.list_content_types.get(list_id, [])})

    def sp_add_list_content_type(self, request, list_id):
        content_type_id = _json(request)["contentTypeId"]
        name = self.content_types[content_type_id]["Name"]
        entry = {"StringId": f"{content_type_id}00{uuid.uuid4().hex.upper()}", "Name": name}
        self.list_content_types.setdefault(list_id, []).append(entry)
        return _ok(entry)

    def sp_break_inheritance(self, request, list_id, copy, clear):
        self.lists[list_id]["HasUniqueRoleAssignments"] = True
        return _ok()

    def sp_list_site_groups(self, request):
        title = _eq(request.url.params.get("$filter"), "Title")
        return _ok({"value": [group for group in self.site_groups.values() if group["Title"] == title]})

    def sp_create_site_group(self, request):
        group = {"Id": next(self._ids), "Description": "", **_json(request)}
        self.site_groups[group["Id"]] = group
        return _ok(group, 201)

    def sp_merge_site_group(self, request, group_id):
        return self._merge(request, self.site_groups[int(group_id)])

    def sp_list_site_group_users(self, request, group_id):
        logins = self.site_group_users.get(int(group_id), [])
        return _ok({"value": [{"Id": index, "LoginName": login} for index, login in enumerate(logins)]})

    def sp_add_site_group_user(self, request, group_id):
        self.site_group_users.setdefault(int(group_id), []).append(_json(request)["LoginName"])
        return _ok({"LoginName": _json(request)["LoginName"]}, 201)

    def sp_role_definition(self, request, name):
        if name not in self.role_definitions:
            return _missing()
        return _ok({"Id": self.role_definitions[name], "Name": name})

    def sp_role_bindings(self, request, scope, principal_id):
        roles = self.role_assignments.get((scope, int(principal_id)))
        if not roles:
            return _missing()
        return _ok({"value": [{"Id": role_id, "Name": "role"} for role_id in sorted(roles)]})

    def sp_add_role_assignment(self, request, scope, principal_id, role_id):
        self.role_assignments.setdefault((scope, int(principal_id)), set()).add(int(role_id))
        return _ok()

    # Power Automate

    def flow_list(self, request):
        return _ok({"value": list(self.flows.values())})

    def flow_create(self, request):
        flow_id = self.new_id()
        self.flows[flow_id] = {**_json(request), "name": flow_id}
        return _ok(self.flows[flow_id], 201)

    def flow_get(self, request, flow_id):
        flow = self.flows.get(flow_id)
        return _ok(flow) if flow else _missing()

    def flow_put(self, request, flow_id):
        if flow_id not in self.flows and not self.accept_put_create:
            return _missing()
        self.flows[flow_id] = {**_json(request), "name": flow_id}
        return _ok(self.flows[flow_id])

    def flow_delete(self, request, flow_id):
        self.flows.pop(flow_id, None)
        return _ok({})

    def flow_set_state(self, request, flow_id, verb):
        self.flows[flow_id]["properties"]["state"] = "Started" if verb == "start" else "Stopped"
        return _ok({})

    def flow_runs(self, request, flow_id):
        return _ok({"value": self.runs.get(flow_id, [])})

    def flow_run(self, request, flow_id, run_id):
        for run in self.runs.get(flow_id, []):
            if run["name"] == run_id:
                return _ok(run)
        return _missing()

    # Dataverse

    def dv_list_publishers(self, request):
        name = _eq(request.url.params.get("$filter"), "uniquename")
        return _ok({"value": [item for item in self.publishers.values() if item["uniquename"] == name]})

    def dv_create_publisher(self, request):
        publisher = {"publisherid": self.new_id(), "description": None, **_json(request)}
        self.publishers[publisher["publisherid"]] = publisher
        return httpx.Response(
            204, headers={"OData-EntityId": f"{DATAVERSE_URL}/api/data/v9.2/publishers({publisher['publisherid']})"}
        )

    def dv_update_publisher(self, request, publisher_id):
        self.publishers[publisher_id].update(_json(request))
        return _ok()

    def dv_list_solutions(self, request):
        name = _eq(request.url.params.get("$filter"), "uniquename")
        items = [item for item in self.solutions.values() if name is None or item["uniquename"] == name]
        return _ok({"value": items})

    def dv_create_solution(self, request):
        body = _json(request)
        publisher_id = body.pop("publisherid@odata.bind").split("(")[1].rstrip(")")
        solution = {
            "solutionid": self.new_id(),
            "description": None,
            "ismanaged": False,
            "_publisherid_value": publisher_id,
            **body,
        }
        self.solutions[solution["solutionid"]] = solution
        return httpx.Response(204)

    def dv_update_solution(self, request, solution_id):
        self.solutions[solution_id].update(_json(request))
        return _ok()

    def dv_list_components(self, request):
        match = re.search(r"_solutionid_value eq (\S+) and componenttype eq (\d+)", request.url.params["$filter"])
        solution_id, component_type = match.group(1), int(match.group(2))
        items = [
            {"objectid": item["objectid"]}
            for item in self.components
            if item["solutionid"] == solution_id and item["componenttype"] == component_type
        ]
        return _ok({"value": items})

    def dv_add_component(self, request):
        body = _json(request)
        solution = next(item for item in self.solutions.values() if item["uniquename"] == body["SolutionUniqueName"])
        self.components.append(
            {"solutionid": solution["solutionid"], "componenttype": body["ComponentType"], "objectid": body["ComponentId"]}
        )
        return _ok({"id": self.new_id()})

    def dv_export(self, request):
        name = _json(request)["SolutionName"]
        return _ok({"ExportSolutionFile": base64.b64encode(solution_zip_bytes(name)).decode("ascii")})

    def dv_import(self, request):
        self.imports.append(_json(request))
        return _ok()


@pytest.fixture
def fake_tenant():
    return FakeTenant()


@pytest.fixture
def audit_store():
    return InMemoryAuditStore()


@pytest.fixture
def audit_logger(audit_store):
    return JsonAuditLogger(name=f"test-{uuid.uuid4()}", store=audit_store, stream=io.StringIO())


@pytest.fixture
def tenant_config():
    return TenantConfig(
        tenant_id=TENANT_ID,
        display_name="Contoso",
        auth={"type": "client_secret", "client_id": "app-id", "client_secret": {"value": "secret"}},
        sharepoint={"site_url": SITE_URL},
        power_platform={"environment_id": ENVIRONMENT_ID, "dataverse_url": DATAVERSE_URL},
    )


@pytest.fixture
def make_context(fake_tenant, audit_logger, tenant_config):
    def factory(dry_run=False, transport=None):
        return TenantExecutionContext(
            tenant=tenant_config,
            token_provider=StaticTokenProvider("test-token"),
            audit=audit_logger,
            settings=RuntimeSettings(verify_attempts=2, verify_delay=0),
            correlation_id="corr-1",
            dry_run=dry_run,
            transport=transport or fake_tenant.transport(),
        )

    return factory


@pytest.fixture
def context(make_context):
    return make_context()


@pytest.fixture
def provisioning_config(tenant_config):
    return ProvisioningConfig(tenants=[tenant_config], settings=RuntimeSettings(verify_attempts=2, verify_delay=0))


@pytest.fixture
def manager(provisioning_config, audit_logger, fake_tenant):
    return TenantManager(
        provisioning_config,
        audit_logger=audit_logger,
        token_provider_factory=lambda tenant: StaticTokenProvider("test-token"),
        transport=fake_tenant.transport(),
    )
