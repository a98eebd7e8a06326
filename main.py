from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional

from m365_provisioning.auth import StaticTokenProvider
from m365_provisioning.config import ProvisioningConfig
from m365_provisioning.flows import analyze_flow
from m365_provisioning.manifest import ProvisioningManifest
from m365_provisioning.preflight import CheckStatus, PreflightResult
from m365_provisioning.provisioner import ProvisioningReport
from m365_provisioning.reconcile import ProvisionOutcome
from m365_provisioning.solutions import pack_solution, solution_info, unpack_solution
from m365_provisioning.tenant_manager import TenantManager

LOCAL_ACTIONS = {("flows", "analyze"), ("solutions", "pack"), ("solutions", "unpack"), ("solutions", "info")}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Idempotent Microsoft 365 tenant provisioning")
    parser.add_argument("--config", help="Path to tenant configuration YAML")
    parser.add_argument("--tenant-id", help="Tenant ID to target")
    parser.add_argument(
        "--access-token",
        help="Pre-acquired bearer token (e.g. from 'az account get-access-token') used instead of app credentials",
    )
    operations = parser.add_subparsers(dest="operation", required=True)

    provision = operations.add_parser("provision", help="Converge the tenant onto a manifest")
    provision.add_argument("--manifest", required=True, help="Path to the desired-state manifest YAML")
    provision.add_argument("--dry-run", action="store_true", help="Report planned changes without writing")
    provision.add_argument("--continue-on-error", action="store_true", help="Record failed steps and keep going")

    list_users = operations.add_parser("list-users", help="List directory users")
    list_users.add_argument("--top", type=int, default=10, help="Number of users to list")

    group = operations.add_parser("ensure-group", help="Create or reconcile a security group")
    group.add_argument("--group-name", required=True, help="Display name for the group")
    group.add_argument("--group-description", required=True, help="Description for the group")

    operations.add_parser("preflight", help="Check FIPS mode, certificate expiry and token acquisition")

    flows = operations.add_parser("flows", help="Manage Power Automate flows").add_subparsers(
        dest="action", required=True
    )
    flows.add_parser("list")
    for name in ("get", "status", "enable", "disable"):
        flows.add_parser(name).add_argument("flow_id")
    runs = flows.add_parser("runs")
    runs.add_argument("flow_id")
    runs.add_argument("--limit", type=int, default=5)
    run = flows.add_parser("run")
    run.add_argument("flow_id")
    run.add_argument("run_id")
    export = flows.add_parser("export")
    export.add_argument("flow_id")
    export.add_argument("--output", help="Defaults to flows/exported-flow-<timestamp>.json")
    flow_import = flows.add_parser("import")
    flow_import.add_argument("file")
    flow_import.add_argument("--flow-id", help="Existing flow to overwrite")
    flow_import.add_argument("--new", action="store_true", help="Create the flow under a new id")
    remove = flows.add_parser("remove")
    remove.add_argument("flow_id")
    remove.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    flows.add_parser("analyze").add_argument("file")

    solutions = operations.add_parser("solutions", help="Manage Power Platform solutions").add_subparsers(
        dest="action", required=True
    )
    solutions.add_parser("list")
    solution_export = solutions.add_parser("export")
    solution_export.add_argument("name")
    solution_export.add_argument("--output", help="Defaults to exports/<name>_<timestamp>.zip")
    solution_export.add_argument("--managed", action="store_true")
    solution_import = solutions.add_parser("import")
    solution_import.add_argument("path")
    solution_import.add_argument("--overwrite", action="store_true", help="Overwrite unmanaged customizations")
    add_flow = solutions.add_parser("add-flow")
    add_flow.add_argument("name")
    add_flow.add_argument("flow_id")
    clone = solutions.add_parser("clone")
    clone.add_argument("name")
    clone.add_argument("--target-dir")
    solutions.add_parser("sync").add_argument("folder")
    pack = solutions.add_parser("pack")
    pack.add_argument("folder")
    pack.add_argument("--output")
    unpack = solutions.add_parser("unpack")
    unpack.add_argument("zip")
    unpack.add_argument("--output-dir")
    solutions.add_parser("info").add_argument("folder")
    return parser


def _jsonable(value: Any) -> Any:
    if isinstance(value, (ProvisioningReport, ProvisionOutcome)):
        return value.as_dict()
    if isinstance(value, PreflightResult):
        return value.model_dump(mode="json")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return value


def _local(args: argparse.Namespace) -> Any:
    if args.operation == "flows":
        return analyze_flow(args.file)
    if args.action == "pack":
        return pack_solution(args.folder, args.output)
    if args.action == "unpack":
        return unpack_solution(args.zip, args.output_dir)
    return solution_info(args.folder)


def _flows(args: argparse.Namespace, ops) -> Any:
    flows = ops.flows
    if args.action == "list":
        return flows.list_flows()
    if args.action == "get":
        return flows.get_flow(args.flow_id)
    if args.action == "status":
        return flows.flow_status(args.flow_id)
    if args.action == "runs":
        return flows.list_runs(args.flow_id, limit=args.limit)
    if args.action == "run":
        return flows.get_run(args.flow_id, args.run_id)
    if args.action == "enable":
        return flows.ensure_flow_state(args.flow_id, enabled=True)
    if args.action == "disable":
        return flows.ensure_flow_state(args.flow_id, enabled=False)
    if args.action == "export":
        return flows.export_flow(args.flow_id, args.output)
    if args.action == "import":
        return flows.import_flow(args.file, flow_id=args.flow_id, new_flow=args.new)
    if args.action == "remove":
        flows.remove_flow(args.flow_id)
        return {"removed": args.flow_id}
    raise SystemExit(f"Unsupported flows action: {args.action}")


def _solutions(args: argparse.Namespace, ops) -> Any:
    solutions = ops.solutions
    if args.action == "list":
        return solutions.list_solutions()
    if args.action == "export":
        return solutions.export_solution(args.name, args.output, managed=args.managed)
    if args.action == "import":
        return {"import_job_id": solutions.import_solution(args.path, overwrite_unmanaged_customizations=args.overwrite)}
    if args.action == "add-flow":
        solutions.add_flow_to_solution(args.name, args.flow_id)
        return {"solution": args.name, "added": args.flow_id}
    if args.action == "clone":
        return solutions.clone_solution(args.name, args.target_dir)
    if args.action == "sync":
        return solutions.sync_solution(args.folder)
    raise SystemExit(f"Unsupported solutions action: {args.action}")


def _confirm_removal(flow_id: str, prompt: Callable[[str], str] = input) -> bool:
    print(f"WARNING: This will permanently delete flow {flow_id}", file=sys.stderr)
    return prompt("Are you sure? (y/N): ").strip().lower() in ("y", "yes")


def create_manager(args: argparse.Namespace) -> TenantManager:
    config = ProvisioningConfig.load(Path(args.config))
    factory = None
    if args.access_token:
        token = args.access_token
        factory = lambda tenant: StaticTokenProvider(token)  # noqa: E731
    return TenantManager(config, token_provider_factory=factory)


def run(args: argparse.Namespace, manager_factory: Callable[[argparse.Namespace], TenantManager] = create_manager) -> Any:
    if (args.operation, getattr(args, "action", None)) in LOCAL_ACTIONS:
        return _local(args)

    if not args.config or not args.tenant_id:
        raise SystemExit(f"--config and --tenant-id are required for {args.operation}")
    if args.operation == "flows" and args.action == "remove" and not args.yes and not _confirm_removal(args.flow_id):
        return {"removed": None, "cancelled": True}

    manager = manager_factory(args)
    if args.operation == "provision":
        manifest = ProvisioningManifest.load(Path(args.manifest))
        return manager.provision(
            tenant_id=args.tenant_id,
            manifest=manifest,
            dry_run=args.dry_run,
            continue_on_error=args.continue_on_error,
        )
    if args.operation == "preflight":
        return manager.preflight(args.tenant_id)
    if args.operation == "list-users":
        operation = lambda ops: ops.list_users(top=args.top)  # noqa: E731
    elif args.operation == "ensure-group":
        operation = lambda ops: ops.create_security_group(  # noqa: E731
            display_name=args.group_name,
            description=args.group_description,
        )
    elif args.operation == "flows":
        operation = lambda ops: _flows(args, ops)  # noqa: E731
    elif args.operation == "solutions":
        operation = lambda ops: _solutions(args, ops)  # noqa: E731
    else:
        raise SystemExit(f"Unsupported operation: {args.operation}")
    return manager.run_operation(tenant_id=args.tenant_id, operation=operation)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    result = run(args)
    print(json.dumps(_jsonable(result), indent=2, default=str))

    if isinstance(result, ProvisioningReport) and result.failed:
        return 1
    if isinstance(result, list) and any(
        isinstance(item, PreflightResult) and item.status == CheckStatus.FAIL for item in result
    ):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
