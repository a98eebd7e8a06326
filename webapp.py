from __future__ import annotations

import json
import os
import uuid
from pathlib import Path
from typing import Optional

from flask import Flask, jsonify, request
from pydantic import ValidationError

from m365_provisioning.audit import InMemoryAuditStore, JsonAuditLogger
from m365_provisioning.config import ProvisioningConfig
from m365_provisioning.errors import ProvisioningError, TenantNotConfiguredError
from m365_provisioning.manifest import ProvisioningManifest
from m365_provisioning.tenant_manager import TenantManager


def _truthy(value: Optional[str]) -> bool:
    return (value or "").lower() in ("1", "true", "yes")


def _limit() -> int:
    limit_param = request.args.get("limit")
    try:
        return int(limit_param) if limit_param else 100
    except ValueError:
        return 100


def create_app(
    config_path: str | os.PathLike[str] = "config/tenants.yaml",
    manager: Optional[TenantManager] = None,
) -> Flask:
    audit_store = InMemoryAuditStore()
    if manager is None:
        config = ProvisioningConfig.load(Path(config_path))
        audit_logger = JsonAuditLogger(store=audit_store, log_dir=config.settings.audit_log_dir)
        manager = TenantManager(config, audit_logger=audit_logger)
    elif manager.audit.store is None:
        manager.audit.store = audit_store
    else:
        audit_store = manager.audit.store

    app = Flask(__name__)
    app.secret_key = os.getenv("FLASK_SECRET_KEY", "replace-this-secret")
    app.config["TENANT_MANAGER"] = manager
    app.config["AUDIT_STORE"] = audit_store

    @app.get("/tenants")
    def tenants():
        payload = [
            {
                "tenant_id": tenant.tenant_id,
                "display_name": tenant.display_name,
                "auth_type": tenant.auth.type,
                "sharepoint_site": tenant.sharepoint.site_url if tenant.sharepoint else None,
                "power_platform_environment": (
                    tenant.power_platform.environment_id if tenant.power_platform else None
                ),
            }
            for tenant in manager.config.tenants
        ]
        return jsonify({"tenants": payload, "count": len(payload)})

    @app.post("/tenants/<tenant_id>/provision")
    def provision(tenant_id: str):
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        body = request.get_json(silent=True)
        if body is None:
            return jsonify({"error": "A JSON manifest body is required"}), 400
        try:
            manifest = ProvisioningManifest.model_validate(body)
        except ValidationError as exc:
            return jsonify({"error": "Invalid manifest", "details": json.loads(exc.json(include_url=False))}), 422

        try:
            report = manager.provision(
                tenant_id=tenant_id,
                manifest=manifest,
                dry_run=_truthy(request.args.get("dry_run")),
                continue_on_error=_truthy(request.args.get("continue_on_error")),
                correlation_id=correlation_id,
            )
        except TenantNotConfiguredError as exc:
            return jsonify({"error": str(exc), "correlation_id": correlation_id}), 404
        except Exception as exc:  # noqa: BLE001
            status = 409 if isinstance(exc, ProvisioningError) else 502
            return jsonify({"error": f"Provisioning failed: {exc}", "correlation_id": correlation_id}), status

        return jsonify(report.as_dict()), 207 if report.failed else 200

    @app.get("/audit.json")
    def audit_json():
        events = audit_store.list(
            limit=_limit(),
            tenant_id=request.args.get("tenant_id"),
            correlation_id=request.args.get("correlation_id"),
        )
        payload = [event.as_dict() for event in events]
        return jsonify({"events": payload, "count": len(payload)})

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", 5000)), debug=True)
