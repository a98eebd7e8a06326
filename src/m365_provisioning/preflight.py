"""Checks run before touching a tenant. None of them blocks a run on its own."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from azure.core.exceptions import ClientAuthenticationError
from pydantic import BaseModel, Field

from .auth import load_certificate
from .config import CertificateAuth, TenantConfig
from .rest_client import SupportsToken

logger = logging.getLogger(__name__)

FIPS_FLAG_PATH = Path("/proc/sys/crypto/fips_enabled")


class CheckStatus(str, Enum):
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"
    SKIPPED = "skipped"


class PreflightResult(BaseModel):
    check_id: str
    status: CheckStatus
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    tenant_id: Optional[str] = None


def check_fips_mode(flag_path: Path = FIPS_FLAG_PATH) -> PreflightResult:
    """FIPS 140-2 mode is expected in DoD IL4/IL5 environments only, so a miss is a warning."""
    try:
        enabled = Path(flag_path).read_text(encoding="utf-8").strip() == "1"
    except OSError:
        return PreflightResult(
            check_id="fips_mode",
            status=CheckStatus.WARNING,
            message="Could not determine FIPS 140-2 status",
            details={"path": str(flag_path)},
        )
    if enabled:
        return PreflightResult(check_id="fips_mode", status=CheckStatus.PASS, message="FIPS 140-2 mode enabled")
    return PreflightResult(
        check_id="fips_mode",
        status=CheckStatus.WARNING,
        message="FIPS 140-2 mode not enabled; enable it with the fips=1 kernel parameter for DoD environments",
    )


def check_certificate_expiry(
    path: Path,
    warn_days: int = 30,
    now: Optional[datetime] = None,
) -> PreflightResult:
    now = now or datetime.now(timezone.utc)
    try:
        certificate = load_certificate(path)
    except (RuntimeError, ValueError) as exc:
        return PreflightResult(
            check_id="certificate_expiry",
            status=CheckStatus.FAIL,
            message=f"Certificate could not be loaded: {exc}",
            details={"path": str(path)},
        )

    expires = certificate.not_valid_after_utc
    details = {"path": str(path), "expires": expires.isoformat(), "subject": certificate.subject.rfc4514_string()}
    if expires <= now:
        return PreflightResult(
            check_id="certificate_expiry", status=CheckStatus.FAIL, message="Certificate has expired", details=details
        )
    remaining = expires - now
    details["days_remaining"] = remaining.days
    if remaining <= timedelta(days=warn_days):
        return PreflightResult(
            check_id="certificate_expiry",
            status=CheckStatus.WARNING,
            message=f"Certificate expires in {remaining.days} days",
            details=details,
        )
    return PreflightResult(
        check_id="certificate_expiry", status=CheckStatus.PASS, message="Certificate is valid", details=details
    )


def check_token(tenant: TenantConfig, provider: SupportsToken) -> PreflightResult:
    try:
        provider.acquire_token(tenant.default_scopes)
    except (RuntimeError, ValueError, OSError, ClientAuthenticationError) as exc:
        return PreflightResult(
            check_id="graph_token",
            status=CheckStatus.FAIL,
            message=f"Token acquisition failed: {exc}",
            tenant_id=tenant.tenant_id,
        )
    return PreflightResult(
        check_id="graph_token",
        status=CheckStatus.PASS,
        message="Acquired Microsoft Graph token",
        tenant_id=tenant.tenant_id,
    )


def run_preflight(
    tenant: TenantConfig,
    provider: SupportsToken,
    fips_flag_path: Optional[Path] = None,
) -> List[PreflightResult]:
    results = [check_fips_mode(fips_flag_path or FIPS_FLAG_PATH)]
    if isinstance(tenant.auth, CertificateAuth):
        results.append(check_certificate_expiry(tenant.auth.certificate_path))
    else:
        results.append(
            PreflightResult(
                check_id="certificate_expiry",
                status=CheckStatus.SKIPPED,
                message=f"Tenant uses {tenant.auth.type} authentication",
            )
        )
    results.append(check_token(tenant, provider))
    for result in results:
        result.tenant_id = tenant.tenant_id
        logger.debug("preflight %s: %s", result.check_id, result.status.value)
    return results
