"""Power Automate flow management through the Microsoft.ProcessSimple REST API."""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .context import TenantExecutionContext
from .errors import ProvisioningError
from .reconcile import Action, ProvisionOutcome, await_convergence

logger = logging.getLogger(__name__)

FLOW_API_VERSION = "2016-11-01"
STATE_STARTED = "Started"
STATE_STOPPED = "Stopped"


def flow_summary(flow: Dict[str, Any]) -> Dict[str, Any]:
    properties = flow.get("properties", {})
    return {
        "id": flow.get("name"),
        "name": properties.get("displayName"),
        "state": properties.get("state"),
        "created": properties.get("createdTime"),
        "modified": properties.get("lastModifiedTime"),
        "suspensionReason": properties.get("flowSuspensionReason"),
    }


def analyze_flow(path: Union[str, Path]) -> Dict[str, Any]:
    """Summarise an exported flow definition without calling the service."""
    flow_path = Path(path)
    if not flow_path.exists():
        raise FileNotFoundError(f"Flow file not found: {flow_path}")
    with flow_path.open("r", encoding="utf-8") as handle:
        flow = json.load(handle)

    properties = flow.get("properties", {})
    definition = properties.get("definition", {})
    references = properties.get("connectionReferences", {}) or {}
    return {
        "name": properties.get("displayName"),
        "state": properties.get("state"),
        "created": properties.get("createdTime"),
        "modified": properties.get("lastModifiedTime"),
        "triggers": sorted(definition.get("triggers", {})),
        "actions": sorted(definition.get("actions", {})),
        "connections": sorted(references),
        "connection_references": [
            {"name": key, "displayName": value.get("displayName"), "tier": value.get("tier")}
            for key, value in sorted(references.items())
        ],
    }


class FlowService:
    def __init__(self, context: TenantExecutionContext):
        self.context = context
        self.flow = context.flow
        self.params = {"api-version": FLOW_API_VERSION}

    def _audit(self, message: str, **kwargs: Any) -> None:
        self.context.audit.info(
            message,
            tenant_id=self.context.tenant_id,
            correlation_id=self.context.correlation_id,
            **kwargs,
        )

    def list_flows(self) -> List[Dict[str, Any]]:
        return [flow_summary(flow) for flow in self.flow.iter_collection("", params=self.params)]

    def get_flow(self, flow_id: str) -> Dict[str, Any]:
        return self.flow.get(flow_id, params=self.params).json()

    def flow_status(self, flow_id: str) -> Dict[str, Any]:
        return flow_summary(self.get_flow(flow_id))

    def list_runs(self, flow_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        runs = self.flow.get(f"{flow_id}/runs", params=self.params).json().get("value", [])
        results = []
        for run in runs[:limit]:
            properties = run.get("properties", {})
            results.append(
                {
                    "name": run.get("name"),
                    "status": properties.get("status", run.get("status")),
                    "startTime": properties.get("startTime"),
                    "endTime": properties.get("endTime"),
                    "trigger": (properties.get("trigger") or {}).get("name"),
                }
            )
        return results

    def get_run(self, flow_id: str, run_id: str) -> Dict[str, Any]:
        if not run_id:
            raise ValueError("A run id is required")
        return self.flow.get(f"{flow_id}/runs/{run_id}", params=self.params).json()

    def enable_flow(self, flow_id: str) -> None:
        self.flow.post(f"{flow_id}/start", params=self.params)
        self._audit("flow_enabled", flow_id=flow_id)

    def disable_flow(self, flow_id: str) -> None:
        self.flow.post(f"{flow_id}/stop", params=self.params)
        self._audit("flow_disabled", flow_id=flow_id)

    def ensure_flow_state(self, flow_id: str, enabled: bool) -> ProvisionOutcome:
        wanted = STATE_STARTED if enabled else STATE_STOPPED
        current = self.flow_status(flow_id)
        if current["state"] == wanted:
            return ProvisionOutcome("flow_state", flow_id, Action.UNCHANGED, resource_id=flow_id)
        changes = {"state": wanted}
        if self.context.dry_run:
            return ProvisionOutcome("flow_state", flow_id, Action.WOULD_UPDATE, resource_id=flow_id, changes=changes)
        if enabled:
            self.enable_flow(flow_id)
        else:
            self.disable_flow(flow_id)
        await_convergence(
            "flow_state",
            flow_id,
            lambda: [] if self.flow_status(flow_id)["state"] == wanted else [wanted],
            self.context.reconcile_settings,
        )
        return ProvisionOutcome("flow_state", flow_id, Action.UPDATED, resource_id=flow_id, changes=changes)

    def export_flow(self, flow_id: str, output_path: Optional[Union[str, Path]] = None) -> Path:
        if output_path is None:
            output_path = Path("flows") / f"exported-flow-{datetime.now().strftime('%Y%m%d-%H%M%S')}.json"
        output = Path(output_path)
        flow = self.get_flow(flow_id)
        if not flow:
            raise ProvisioningError(f"Flow {flow_id} returned an empty definition", kind="flow", name=flow_id)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(flow, indent=2), encoding="utf-8")
        self._audit("flow_exported", flow_id=flow_id, path=str(output), size=output.stat().st_size)
        return output

    def import_flow(
        self,
        path: Union[str, Path],
        flow_id: Optional[str] = None,
        new_flow: bool = False,
    ) -> Dict[str, Any]:
        """Write a flow definition to the environment.

        Updates ``flow_id`` in place, or with ``new_flow`` creates the flow under a fresh
        id, falling back to a POST on the collection when the service rejects the PUT.
        """
        flow_path = Path(path)
        if not flow_path.exists():
            raise FileNotFoundError(f"Flow file not found: {flow_path}")
        if not new_flow and not flow_id:
            raise ValueError("flow_id is required unless importing as a new flow")
        body = json.loads(flow_path.read_text(encoding="utf-8"))
        target_id = str(uuid.uuid4()) if new_flow else flow_id

        response = self.flow.put(target_id, json=body, params=self.params, ok_statuses=(404,))
        if response.status_code == 404:
            if not new_flow:
                raise ProvisioningError(f"Flow {flow_id} not found for update", kind="flow", name=flow_id)
            logger.debug("PUT of new flow %s returned 404, retrying as POST", target_id)
            response = self.flow.post("", json=body, params=self.params)

        result = response.json() if response.content else {}
        self._audit("flow_imported", flow_id=result.get("name", target_id), path=str(flow_path), new_flow=new_flow)
        return result

    def remove_flow(self, flow_id: str) -> None:
        self.flow.delete(flow_id, params=self.params)
        self._audit("flow_removed", flow_id=flow_id)
