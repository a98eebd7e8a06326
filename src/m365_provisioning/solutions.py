"""Power Platform solutions through the Dataverse Web API, plus local solution packaging."""
from __future__ import annotations

import base64
import logging
import tempfile
import uuid
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from xml.etree import ElementTree

from .context import TenantExecutionContext
from .errors import ProvisioningError, ResourceConflictError
from .manifest import PublisherSpec, SolutionSpec
from .reconcile import Action, ProvisionOutcome, await_convergence, ensure
from .rest_client import odata_quote

logger = logging.getLogger(__name__)

WORKFLOW_COMPONENT_TYPE = 29
SOLUTION_SELECT = "solutionid,uniquename,friendlyname,version,description,ismanaged,_publisherid_value"
PUBLISHER_SELECT = "publisherid,uniquename,friendlyname,description,customizationprefix"
SOLUTION_MANIFEST = Path("Other") / "Solution.xml"


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def _solution_root(folder: Path) -> Path:
    """Unpacked solutions live either directly in ``folder`` or in its ``src`` directory."""
    if (folder / "src" / SOLUTION_MANIFEST).exists():
        return folder / "src"
    return folder


def pack_solution(folder: Union[str, Path], output_path: Optional[Union[str, Path]] = None) -> Path:
    folder = Path(folder)
    if not folder.is_dir():
        raise FileNotFoundError(f"Solution directory not found: {folder}")
    root = _solution_root(folder)
    if not (root / SOLUTION_MANIFEST).exists():
        raise ProvisioningError(f"{root} has no {SOLUTION_MANIFEST}", kind="solution_package", name=str(folder))

    output = Path(output_path) if output_path else Path("packed") / f"{folder.name}_{_timestamp()}.zip"
    output.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path in sorted(root.rglob("*")):
            if path.is_file():
                archive.write(path, path.relative_to(root).as_posix())
    logger.debug("packed %s into %s", root, output)
    return output


def unpack_solution(zip_path: Union[str, Path], output_dir: Optional[Union[str, Path]] = None) -> Path:
    zip_path = Path(zip_path)
    if not zip_path.exists():
        raise FileNotFoundError(f"Solution zip not found: {zip_path}")
    target = Path(output_dir) if output_dir else Path("unpacked") / zip_path.stem
    target.mkdir(parents=True, exist_ok=True)
    resolved = target.resolve()

    with zipfile.ZipFile(zip_path) as archive:
        for member in archive.namelist():
            destination = (resolved / member).resolve()
            if resolved != destination and resolved not in destination.parents:
                raise ProvisioningError(
                    f"Archive entry {member!r} escapes {target}", kind="solution_package", name=str(zip_path)
                )
        archive.extractall(resolved)
    return target


def solution_info(folder: Union[str, Path]) -> Dict[str, Any]:
    folder = Path(folder)
    if not folder.is_dir():
        raise FileNotFoundError(f"Solution directory not found: {folder}")
    root = _solution_root(folder)
    info: Dict[str, Any] = {
        "path": str(folder),
        "xml_files": [str(path.relative_to(folder)) for path in sorted(folder.rglob("*.xml"))[:10]],
        "project_file": next((path.name for path in sorted(folder.glob("*.cdsproj"))), None),
    }

    manifest_path = root / SOLUTION_MANIFEST
    if manifest_path.exists():
        manifest = ElementTree.parse(manifest_path).getroot().find("SolutionManifest")
        if manifest is not None:
            localized = manifest.find("LocalizedNames/LocalizedName")
            info.update(
                {
                    "unique_name": manifest.findtext("UniqueName"),
                    "localized_name": localized.get("description") if localized is not None else None,
                    "version": manifest.findtext("Version"),
                    "managed": manifest.findtext("Managed") == "1",
                    "publisher": manifest.findtext("Publisher/UniqueName"),
                    "publisher_prefix": manifest.findtext("Publisher/CustomizationPrefix"),
                }
            )
    return info


class SolutionService:
    def __init__(self, context: TenantExecutionContext):
        self.context = context
        self.dataverse = context.dataverse

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

    def _audit(self, message: str, **kwargs: Any) -> None:
        self.context.audit.info(
            message,
            tenant_id=self.context.tenant_id,
            correlation_id=self.context.correlation_id,
            **kwargs,
        )

    def _single(self, entity_set: str, key: str, value: str, select: str) -> Optional[Dict[str, Any]]:
        items = self.dataverse.list_collection(
            entity_set, params={"$filter": f"{key} eq {odata_quote(value)}", "$select": select}
        )
        if len(items) > 1:
            raise ResourceConflictError(f"{len(items)} {entity_set} named {value!r}", kind=entity_set, name=value)
        return items[0] if items else None

    def list_solutions(self) -> List[Dict[str, Any]]:
        return self.dataverse.list_collection(
            "solutions", params={"$filter": "isvisible eq true", "$select": SOLUTION_SELECT}
        )

    def find_solution(self, unique_name: str) -> Optional[Dict[str, Any]]:
        return self._single("solutions", "uniquename", unique_name, SOLUTION_SELECT)

    def find_publisher(self, unique_name: str) -> Optional[Dict[str, Any]]:
        return self._single("publishers", "uniquename", unique_name, PUBLISHER_SELECT)

    def ensure_publisher(self, spec: PublisherSpec) -> ProvisionOutcome:
        def find() -> Optional[Dict[str, Any]]:
            publisher = self.find_publisher(spec.unique_name)
            if publisher is not None and publisher.get("customizationprefix") != spec.prefix:
                raise ResourceConflictError(
                    f"Publisher {spec.unique_name} uses prefix {publisher.get('customizationprefix')!r}, "
                    f"not {spec.prefix!r}",
                    kind="publisher",
                    name=spec.unique_name,
                )
            return publisher

        def create() -> None:
            payload = {
                "uniquename": spec.unique_name,
                "friendlyname": spec.friendly_name,
                "customizationprefix": spec.prefix,
                "customizationoptionvalueprefix": spec.option_value_prefix,
            }
            if spec.description:
                payload["description"] = spec.description
            self.dataverse.post("publishers", json=payload)

        return self._ensure(
            "publisher",
            spec.unique_name,
            find=find,
            create=create,
            desired=spec.dataverse_properties(),
            update=lambda existing, changes: self.dataverse.patch(
                f"publishers({existing['publisherid']})", json=changes
            ),
            resource_id=lambda item: item.get("publisherid"),
        )

    def ensure_solution(self, spec: SolutionSpec, publisher_id: Optional[str]) -> ProvisionOutcome:
        def find() -> Optional[Dict[str, Any]]:
            solution = self.find_solution(spec.unique_name)
            if solution is not None and solution.get("ismanaged"):
                raise ResourceConflictError(
                    f"Solution {spec.unique_name} is managed and cannot be changed in place",
                    kind="solution",
                    name=spec.unique_name,
                )
            return solution

        def create() -> None:
            if not publisher_id:
                raise ProvisioningError(
                    f"Solution {spec.unique_name} needs a publisher id", kind="solution", name=spec.unique_name
                )
            payload = {
                "uniquename": spec.unique_name,
                "friendlyname": spec.friendly_name,
                "version": spec.version,
                "publisherid@odata.bind": f"/publishers({publisher_id})",
            }
            if spec.description:
                payload["description"] = spec.description
            self.dataverse.post("solutions", json=payload)

        return self._ensure(
            "solution",
            spec.unique_name,
            find=find,
            create=create,
            desired=spec.dataverse_properties(),
            update=lambda existing, changes: self.dataverse.patch(
                f"solutions({existing['solutionid']})", json=changes
            ),
            resource_id=lambda item: item.get("solutionid"),
        )

    def solution_flow_ids(self, solution_id: str) -> List[str]:
        components = self.dataverse.list_collection(
            "solutioncomponents",
            params={
                "$filter": f"_solutionid_value eq {solution_id} and componenttype eq {WORKFLOW_COMPONENT_TYPE}",
                "$select": "objectid",
            },
        )
        return [component["objectid"].lower() for component in components]

    def missing_solution_flows(self, solution_id: Optional[str], flow_ids: List[str]) -> List[str]:
        existing = set(self.solution_flow_ids(solution_id)) if solution_id else set()
        return [flow_id for flow_id in flow_ids if flow_id.lower() not in existing]

    def ensure_solution_flows(self, spec: SolutionSpec, solution_id: Optional[str]) -> ProvisionOutcome:
        missing = self.missing_solution_flows(solution_id, spec.flows)

        if not missing:
            outcome = ProvisionOutcome("solution_flows", spec.unique_name, Action.UNCHANGED, resource_id=solution_id)
        elif self.context.dry_run:
            outcome = ProvisionOutcome(
                "solution_flows", spec.unique_name, Action.WOULD_UPDATE, resource_id=solution_id,
                changes={"added": missing},
            )
        else:
            if solution_id is None:
                solution = self.find_solution(spec.unique_name)
                if solution is None:
                    raise ProvisioningError(
                        f"Solution {spec.unique_name} not found", kind="solution_flows", name=spec.unique_name
                    )
                solution_id = solution["solutionid"]
            for flow_id in missing:
                self.add_flow_to_solution(spec.unique_name, flow_id)
            await_convergence(
                "solution_flows",
                spec.unique_name,
                lambda: self.missing_solution_flows(solution_id, missing),
                self.context.reconcile_settings,
            )
            outcome = ProvisionOutcome(
                "solution_flows", spec.unique_name, Action.UPDATED, resource_id=solution_id,
                changes={"added": missing},
            )
        self._audit(
            "solution_flows_reconciled", solution=spec.unique_name, action=outcome.action.value, added=missing
        )
        return outcome

    def add_flow_to_solution(self, solution_name: str, flow_id: str) -> None:
        self.dataverse.post(
            "AddSolutionComponent",
            json={
                "ComponentId": flow_id,
                "ComponentType": WORKFLOW_COMPONENT_TYPE,
                "SolutionUniqueName": solution_name,
                "AddRequiredComponents": False,
                "DoNotIncludeSubcomponents": False,
            },
        )
        self._audit("solution_component_added", solution=solution_name, flow_id=flow_id)

    def export_solution(
        self,
        solution_name: str,
        output_path: Optional[Union[str, Path]] = None,
        managed: bool = False,
    ) -> Path:
        output = Path(output_path) if output_path else Path("exports") / f"{solution_name}_{_timestamp()}.zip"
        response = self.dataverse.post("ExportSolution", json={"SolutionName": solution_name, "Managed": managed})
        encoded = response.json().get("ExportSolutionFile")
        if not encoded:
            raise ProvisioningError(f"Export of {solution_name} returned no file", kind="solution", name=solution_name)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(base64.b64decode(encoded))
        self._audit("solution_exported", solution=solution_name, path=str(output), managed=managed)
        return output

    def import_solution(
        self,
        path: Union[str, Path],
        overwrite_unmanaged_customizations: bool = False,
        publish_workflows: bool = True,
    ) -> str:
        solution_path = Path(path)
        if not solution_path.exists():
            raise FileNotFoundError(f"Solution file not found: {solution_path}")
        import_job_id = str(uuid.uuid4())
        self.dataverse.post(
            "ImportSolution",
            json={
                "CustomizationFile": base64.b64encode(solution_path.read_bytes()).decode("ascii"),
                "OverwriteUnmanagedCustomizations": overwrite_unmanaged_customizations,
                "PublishWorkflows": publish_workflows,
                "ImportJobId": import_job_id,
            },
        )
        self._audit("solution_imported", path=str(solution_path), import_job_id=import_job_id)
        return import_job_id

    def clone_solution(self, solution_name: str, target_dir: Optional[Union[str, Path]] = None) -> Path:
        target = Path(target_dir) if target_dir else Path(f"{solution_name}-cloned")
        with tempfile.TemporaryDirectory() as scratch:
            archive = self.export_solution(solution_name, Path(scratch) / f"{solution_name}.zip")
            return unpack_solution(archive, target)

    def sync_solution(self, folder: Union[str, Path]) -> Path:
        """Refresh an unpacked solution folder from the environment."""
        folder = Path(folder)
        name = solution_info(folder).get("unique_name")
        if not name:
            raise ProvisioningError(f"{folder} has no solution manifest", kind="solution", name=str(folder))
        with tempfile.TemporaryDirectory() as scratch:
            archive = self.export_solution(name, Path(scratch) / f"{name}.zip")
            return unpack_solution(archive, _solution_root(folder))
